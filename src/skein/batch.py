"""Batch coordinator for forest merges.

Partitions unprocessed events into independent units of work using bulk
weak-component labels, then merges the units on a bounded worker pool.
Within a unit, events are merged strictly in (timestamp, id) order and
committed as one transaction; across units there is no ordering.

The planning graph holds the unprocessed events, their precedence links
and, for every processed predecessor, the forest path up to its current
head. Two units therefore never extend the same head. A concurrent
writer outside this run is caught by the store's commit check and the
unit is retried as a whole.
"""

from __future__ import annotations

import enum
import logging
import os
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import pydantic as pdt

import skein._retry as retry
import skein.core as core
import skein.errors as errors
import skein.forest as forest
import skein.oracles as oracles
import skein.store.base as store_base

logger = logging.getLogger(__name__)


class GroupStatus(enum.Enum):
    """Status of a single component group."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class GroupResult:
    """Result of merging one component group.

    Carries enough to retry the group selectively: its id within the run
    and the event ids it covered.
    """

    group_id: int
    event_ids: tuple[str, ...]
    status: GroupStatus
    merged: int = 0
    attempts: int = 0
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class BatchResult:
    """Aggregate result of a merge run."""

    group_results: list[GroupResult] = field(default_factory=list)
    used_fallback_planner: bool = False

    @property
    def success_count(self) -> int:
        """Number of groups merged successfully."""
        return sum(1 for r in self.group_results if r.status == GroupStatus.SUCCESS)

    @property
    def failed_count(self) -> int:
        """Number of groups that failed after retries."""
        return sum(1 for r in self.group_results if r.status == GroupStatus.FAILED)

    @property
    def merged_count(self) -> int:
        """Number of events absorbed into the forest by this run."""
        return sum(r.merged for r in self.group_results)

    @property
    def failed_groups(self) -> list[GroupResult]:
        return [r for r in self.group_results if r.status == GroupStatus.FAILED]

    @property
    def is_success(self) -> bool:
        return self.failed_count == 0


def planning_graph(
    store: store_base.BaseGraphStore,
    pending: list[core.Event],
) -> tuple[list[str], list[tuple[str, str]]]:
    """Build the bounded graph used to group ``pending`` events.

    Returns:
        Tuple of (nodes, edges).
    """
    nodes: dict[str, None] = {e.id: None for e in pending}
    edges: list[tuple[str, str]] = []
    walked: set[str] = set()

    for event in pending:
        for pred in store.precedence_predecessors(event.id):
            nodes.setdefault(pred, None)
            edges.append((pred, event.id))
            if pred in walked or not store.is_processed(pred):
                continue
            # Tie every event that will extend this component to its head
            walked.add(pred)
            node = pred
            while True:
                nxt = store.forest_successor(node)
                if nxt is None:
                    break
                nodes.setdefault(nxt, None)
                edges.append((node, nxt))
                if nxt in walked:
                    break
                walked.add(nxt)
                node = nxt

    return list(nodes), edges


def plan_groups(
    store: store_base.BaseGraphStore,
    oracle: oracles.BaseOracle,
    pending: list[core.Event] | None = None,
) -> tuple[list[list[str]], bool]:
    """Group unprocessed events by weak component.

    Falls back to a direct breadth-first traversal when the oracle is
    unavailable or returns incomplete labels.

    Returns:
        Tuple of (groups, used_fallback). Each group lists event ids in
        (timestamp, id) order; groups are ordered by their first event.
    """
    if pending is None:
        pending = store.unprocessed_events()
    if not pending:
        return [], False

    nodes, edges = planning_graph(store, pending)
    used_fallback = False
    try:
        labels = oracle.weak_components(nodes, edges)
        missing = [n for n in nodes if n not in labels]
        if missing:
            raise errors.OracleUnavailableError(
                oracle=oracle.kind,
                operation="weak_components",
                details=f"No label returned for {len(missing)} node(s), e.g. '{missing[0]}'",
            )
    except errors.OracleUnavailableError as exc:
        logger.warning("WCC oracle unavailable, planning by direct traversal: %s", exc.cause)
        labels = oracles.BruteForceOracle().weak_components(nodes, edges)
        used_fallback = True

    grouped: dict[int, list[str]] = {}
    for event in sorted(pending, key=lambda e: e.order_key):
        grouped.setdefault(labels[event.id], []).append(event.id)
    return list(grouped.values()), used_fallback


class BatchCoordinator(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Runs forest merges for all unprocessed events.

    Example:
        coordinator = BatchCoordinator(workers=8, max_retries=3)
        result = coordinator.run(store, oracles.NetworkxOracle())
        for failed in result.failed_groups:
            print(failed.group_id, failed.event_ids, failed.error)
    """

    workers: int | None = None  # None = os.cpu_count()
    max_retries: int = 3
    backoff_seconds: float = 0.05
    shuffle: bool = True
    seed: int | None = None

    @property
    def effective_workers(self) -> int:
        return max(1, self.workers or os.cpu_count() or 1)

    def run(
        self,
        store: store_base.BaseGraphStore,
        oracle: oracles.BaseOracle,
    ) -> BatchResult:
        """Plan and merge every unprocessed event.

        Returns:
            BatchResult with per-group status tracking.

        Raises:
            StructuralViolationError: If the forest is found corrupt. The run
                is aborted; groups not yet started are cancelled.
        """
        groups, used_fallback = plan_groups(store, oracle)
        result = BatchResult(used_fallback_planner=used_fallback)
        if not groups:
            return result

        # Scheduling order only; correctness does not depend on it
        schedule = list(enumerate(groups))
        if self.shuffle:
            random.Random(self.seed).shuffle(schedule)

        logger.info(
            "Merging %d event(s) in %d group(s) on %d worker(s)",
            sum(len(g) for g in groups),
            len(groups),
            self.effective_workers,
        )

        with ThreadPoolExecutor(max_workers=self.effective_workers) as pool:
            futures = [
                pool.submit(self._run_group, store, group_id, event_ids)
                for group_id, event_ids in schedule
            ]
            try:
                for future in as_completed(futures):
                    result.group_results.append(future.result())
            except errors.StructuralViolationError:
                for future in futures:
                    future.cancel()
                raise

        result.group_results.sort(key=lambda r: r.group_id)
        logger.info(
            "Merge run finished: %d group(s) succeeded, %d failed, %d event(s) merged",
            result.success_count,
            result.failed_count,
            result.merged_count,
        )
        return result

    def _run_group(
        self,
        store: store_base.BaseGraphStore,
        group_id: int,
        event_ids: list[str],
    ) -> GroupResult:
        """Merge one group, retrying it as a unit on transient errors."""
        start_time = time.perf_counter()
        try:
            merges, attempts = retry.retry_call(
                lambda: forest.merge_group(store, event_ids),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                description=f"merge group {group_id}",
            )
        except errors.StructuralViolationError:
            logger.error("Structural violation while merging group %d", group_id)
            raise
        except Exception as exc:
            attempts = self.max_retries + 1 if isinstance(exc, errors.TransientStoreError) else 1
            logger.error(
                "Failed to merge group %d (%d event(s), first '%s'): %s",
                group_id,
                len(event_ids),
                event_ids[0],
                exc,
            )
            return GroupResult(
                group_id=group_id,
                event_ids=tuple(event_ids),
                status=GroupStatus.FAILED,
                attempts=attempts,
                error=str(exc),
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

        return GroupResult(
            group_id=group_id,
            event_ids=tuple(event_ids),
            status=GroupStatus.SUCCESS,
            merged=len(merges),
            attempts=attempts,
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )
