"""Structured error handling with context + cause + fix pattern.

All Skein errors follow a consistent pattern that provides:
- Context: What operation was being attempted
- Cause: Why it failed
- Fix: How to resolve the issue

Errors fall into five families. Transient store errors are retried at
the unit-of-work granularity. Structural violations are fatal and must be
surfaced for a manual rebuild. Oracle errors degrade or fail a step
explicitly. A late-arriving event fails its merge until a rebuild. Missing
data is never an error.
"""

from __future__ import annotations


class SkeinError(Exception):
    """Base error with structured messaging.

    All Skein errors inherit from this class and provide
    context, cause, and fix information.
    """

    def __init__(self, context: str, cause: str, fix: str) -> None:
        self.context = context
        self.cause = cause
        self.fix = fix
        message = f"{context}\n\nCause: {cause}\n\nFix: {fix}"
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize error to structured dict for JSON output."""
        return {
            "error": True,
            "code": type(self).__name__,
            "context": self.context,
            "cause": self.cause,
            "fix": self.fix,
        }


class ConfigurationError(SkeinError):
    """Configuration file or settings related errors."""

    pass


class ConfigNotFoundError(ConfigurationError):
    """Configuration file not found."""

    def __init__(self, path: str) -> None:
        super().__init__(
            context=f"Loading configuration from '{path}'",
            cause="Configuration file not found",
            fix=f"Create a skein.yaml file at '{path}' or pass the path explicitly to skein.connect()",
        )


class ConfigValidationError(ConfigurationError):
    """Configuration validation failed."""

    def __init__(self, path: str, details: str) -> None:
        super().__init__(
            context=f"Validating configuration from '{path}'",
            cause=details,
            fix="Check the configuration file matches the expected schema. Required keys are name, default_env and environments.",
        )


class EnvironmentNotFoundError(ConfigurationError):
    """Requested environment not defined in configuration."""

    def __init__(self, env: str, available: list[str]) -> None:
        available_str = ", ".join(available) if available else "(none)"
        super().__init__(
            context=f"Resolving environment '{env}'",
            cause=f"Environment '{env}' is not defined in skein.yaml",
            fix=f"Use one of the available environments: {available_str}, or add '{env}' to the environments section",
        )


class StoreError(SkeinError):
    """Graph store operation errors."""

    pass


class TransientStoreError(StoreError):
    """Timeout or lock contention in the graph store. Safe to retry."""

    pass


class MergeConflictError(TransientStoreError):
    """A concurrent writer extended a head this group was about to extend."""

    def __init__(self, event_id: str, head: str | None = None) -> None:
        if head is None:
            cause = f"Event '{event_id}' was already merged by another writer"
        else:
            cause = f"Head '{head}' already has an outgoing forest edge"
        super().__init__(
            context=f"Committing forest merge for event '{event_id}'",
            cause=cause,
            fix="Retry the whole component group; it will be re-planned against the current forest.",
        )


class StoreUnavailableError(StoreError):
    """The graph store could not be reached."""

    def __init__(self, operation: str, details: str) -> None:
        super().__init__(
            context=f"Running store operation '{operation}'",
            cause=details,
            fix="Check the store configuration and that the database is reachable.",
        )


class StructuralViolationError(SkeinError):
    """The stored graph violates a forest or chain invariant.

    Never repaired automatically. Reset and rebuild the derived state.
    """

    pass


class ForestCycleError(StructuralViolationError):
    """A cycle was found along forest edges."""

    def __init__(self, event_id: str, path: list[str]) -> None:
        super().__init__(
            context=f"Walking the forest from event '{event_id}'",
            cause=f"Cycle detected along forest edges: {' -> '.join(path)}",
            fix="Run a full reset and rebuild of the forest.",
        )


class BranchingForestError(StructuralViolationError):
    """A forest node has more than one outgoing edge."""

    def __init__(self, event_id: str, successors: list[str]) -> None:
        super().__init__(
            context=f"Reading the forest successor of event '{event_id}'",
            cause=f"Event has {len(successors)} outgoing forest edges: {', '.join(sorted(successors))}",
            fix="Run a full reset and rebuild of the forest.",
        )


class BranchingChainError(StructuralViolationError):
    """The precedence edges of an entity do not form a single path."""

    def __init__(self, entity: str, details: str) -> None:
        super().__init__(
            context=f"Checking the precedence chain of entity '{entity}'",
            cause=details,
            fix="Run a full reset and relink the entity chains.",
        )


class LateArrivalError(SkeinError):
    """An event arrived after a newer event it precedes was merged.

    Merging it would need a forest edge pointing backwards in time, so
    nothing is written and the event waits for a rebuild.
    """

    def __init__(self, event_id: str, newer: str) -> None:
        super().__init__(
            context=f"Merging late event '{event_id}'",
            cause=f"Newer event '{newer}' is already merged into the same component",
            fix="Run a full rebuild to place the event in time order.",
        )


class OracleUnavailableError(SkeinError):
    """A bulk WCC or shortest-path oracle could not answer."""

    def __init__(self, oracle: str, operation: str, details: str) -> None:
        super().__init__(
            context=f"Calling {operation} on the '{oracle}' oracle",
            cause=details,
            fix="Check the oracle dependencies are installed or switch oracle kind in skein.yaml.",
        )


class FeaturesUnavailableError(SkeinError):
    """Real-time features could not be computed."""

    def __init__(self, event_id: str, details: str) -> None:
        super().__init__(
            context=f"Scoring event '{event_id}' in real time",
            cause=details,
            fix="Features are unavailable for this request; do not score with defaults. Check store health.",
        )


class UnknownEventError(SkeinError):
    """The requested event is not held by the store."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            context=f"Looking up event '{event_id}'",
            cause="Event not found in the graph store",
            fix="Ingest the event before extracting features for it.",
        )


class CutoffViolationError(SkeinError):
    """Backward extraction asked for an event newer than its cutoff."""

    def __init__(self, event_id: str, timestamp: str, cutoff: str) -> None:
        super().__init__(
            context=f"Extracting training features for event '{event_id}'",
            cause=f"Event timestamp {timestamp} is after the cutoff {cutoff}",
            fix="Only request training features for events at or before the cutoff.",
        )
