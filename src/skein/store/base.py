"""Base graph store abstraction.

The graph store persists events, entities, touch edges and the derived
state built on top of them: precedence links, forest edges, processed
flags and component metrics. BaseGraphStore defines the interface that
every store implementation must follow, so the forest logic can run
against an in-memory store in tests and a persistent store in production.
"""

from __future__ import annotations

import abc
from datetime import datetime

import pydantic as pdt

import skein.core as core


class BaseGraphStore(abc.ABC, pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Abstract base class for graph stores.

    Implementations must be frozen Pydantic models (config-as-code) and
    safe to share between worker threads.
    """

    kind: str

    @abc.abstractmethod
    def initialize(self) -> None:
        """Create tables/schema if needed. Idempotent."""
        ...

    @abc.abstractmethod
    def teardown(self) -> None:
        """Remove all data. Used for cleanup."""
        ...

    # -- events ------------------------------------------------------------

    @abc.abstractmethod
    def add_event(self, event: core.Event) -> bool:
        """Insert an event if absent. Returns True if it was created."""
        ...

    @abc.abstractmethod
    def get_event(self, event_id: str) -> core.Event | None:
        """Fetch one event, or None if unknown."""
        ...

    @abc.abstractmethod
    def list_events(self) -> list[core.Event]:
        """All events ordered by (timestamp, id)."""
        ...

    @abc.abstractmethod
    def events_between(self, start: datetime, end: datetime) -> list[core.Event]:
        """Events with ``start <= timestamp <= end`` ordered by (timestamp, id)."""
        ...

    # -- touch edges -------------------------------------------------------

    @abc.abstractmethod
    def add_touch(self, event_id: str, entity: core.Entity) -> bool:
        """Associate an event with an entity. Returns True if created."""
        ...

    @abc.abstractmethod
    def entities_of(self, event_id: str) -> list[core.Entity]:
        """Entities touched by an event."""
        ...

    @abc.abstractmethod
    def events_touching(self, entity: core.Entity) -> list[core.Event]:
        """Events referencing an entity, ordered by (timestamp, id)."""
        ...

    @abc.abstractmethod
    def list_entities(self) -> list[core.Entity]:
        """Every known entity."""
        ...

    # -- precedence edges --------------------------------------------------

    @abc.abstractmethod
    def add_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        """Insert the entity's chain edge if absent. Returns True if created."""
        ...

    @abc.abstractmethod
    def remove_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        """Delete the entity's chain edge. Returns True if it existed."""
        ...

    @abc.abstractmethod
    def chain_edges(self, entity: core.Entity) -> list[tuple[str, str]]:
        """Precedence edges recorded for one entity as (src, dst)."""
        ...

    @abc.abstractmethod
    def precedence_predecessors(self, event_id: str) -> list[str]:
        """Distinct events ``x`` with an edge ``x -> event_id`` for any entity."""
        ...

    @abc.abstractmethod
    def precedence_successors(self, event_id: str) -> list[str]:
        """Distinct events ``y`` with an edge ``event_id -> y`` for any entity."""
        ...

    @abc.abstractmethod
    def precedence_edges(self) -> list[tuple[str, str]]:
        """Distinct precedence edges over all entities as (src, dst)."""
        ...

    # -- forest ------------------------------------------------------------

    @abc.abstractmethod
    def forest_successor(self, event_id: str) -> str | None:
        """The head that absorbed ``event_id``, or None if it is a head.

        Raises:
            BranchingForestError: If the node has several outgoing edges.
        """
        ...

    @abc.abstractmethod
    def forest_predecessors(self, event_id: str) -> list[str]:
        """Heads absorbed directly into ``event_id``."""
        ...

    @abc.abstractmethod
    def forest_edges(self) -> list[tuple[str, str]]:
        """Every forest edge as (head, event)."""
        ...

    @abc.abstractmethod
    def is_processed(self, event_id: str) -> bool:
        """True if the event has been absorbed into the forest."""
        ...

    @abc.abstractmethod
    def unprocessed_events(self) -> list[core.Event]:
        """Events not yet absorbed, ordered by (timestamp, id)."""
        ...

    @abc.abstractmethod
    def commit_group(self, merges: list[core.Merge]) -> None:
        """Apply a component group's merges atomically.

        Merges are applied in order. Before each one, the event must still
        be unprocessed and every head must have no outgoing forest edge.
        Any failed check rolls back the whole group.

        Raises:
            MergeConflictError: If a concurrent writer got there first.
        """
        ...

    # -- metrics -----------------------------------------------------------

    @abc.abstractmethod
    def set_metrics(self, event_id: str, metrics: core.ComponentMetrics) -> None:
        """Persist a component snapshot on an event."""
        ...

    @abc.abstractmethod
    def get_metrics(self, event_id: str) -> core.ComponentMetrics | None:
        """Persisted snapshot, or None if not computed yet."""
        ...

    # -- reset -------------------------------------------------------------

    @abc.abstractmethod
    def reset_derived(self) -> None:
        """Delete precedence edges, forest edges, processed flags and metrics.

        All-or-nothing: either every piece of derived state is gone or
        nothing changed. Events, entities and touch edges are kept.
        """
        ...
