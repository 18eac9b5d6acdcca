"""Per-event component metrics over bounded micro-projections.

Each processed event is the root of its own temporal snapshot: the
component as it existed at that event's timestamp is everything reached
by walking incoming forest edges backwards from it. Size, diameter and
velocity are computed on a micro-projection holding only that
component's events and the entities they touch, never the full graph.

Metrics are computed once and then immutable; only a rebuild or an
explicit recompute overwrites them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import pydantic as pdt

import skein._retry as retry
import skein.core as core
import skein.errors as errors
import skein.forest as forest
import skein.oracles as oracles
import skein.store.base as store_base

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Projection:
    """Undirected micro-projection of one component.

    Nodes are event ids and ``Entity`` values. Edges are the touch edges
    of the component's events plus the precedence links between them.
    """

    events: list[str]
    nodes: list[Hashable]
    edges: list[tuple[Hashable, Hashable]]


@dataclass
class MetricsResult:
    """Outcome of a metrics run."""

    computed: list[str] = field(default_factory=list)
    skipped: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return not self.failed


def micro_projection(store: store_base.BaseGraphStore, elements: list[str]) -> Projection:
    """Build the bounded projection for a component's events."""
    members = set(elements)
    nodes: dict[Hashable, None] = dict.fromkeys(elements)
    edges: list[tuple[Hashable, Hashable]] = []
    for event_id in elements:
        for entity in store.entities_of(event_id):
            nodes.setdefault(entity, None)
            edges.append((event_id, entity))
        for dst in store.precedence_successors(event_id):
            if dst in members:
                edges.append((event_id, dst))
    return Projection(events=list(elements), nodes=list(nodes), edges=edges)


def component_diameter(projection: Projection, oracle: oracles.BaseOracle) -> int | None:
    """Longest shortest path from any component event, halved and rounded up.

    Event and entity hops both count in the projection, so the raw length
    is halved. A single event is 0; None when there are no edges.
    """
    if not projection.edges:
        return None
    if len(projection.events) == 1:
        return 0
    longest = 0
    for source in projection.events:
        lengths = oracle.shortest_path_lengths(projection.nodes, projection.edges, source)
        longest = max(longest, max(lengths.values(), default=0))
    return (longest + 1) // 2


def component_velocity(events: list[core.Event]) -> float:
    """Arrivals after the first event per second between first and last."""
    if len(events) < 2:
        return 0.0
    ordered = sorted(events, key=lambda e: e.order_key)
    span = (ordered[-1].timestamp - ordered[0].timestamp).total_seconds()
    if span <= 0:
        return 0.0
    return (len(ordered) - 1) / span


def compute_metrics(
    store: store_base.BaseGraphStore,
    oracle: oracles.BaseOracle,
    event_id: str,
) -> core.ComponentMetrics:
    """Compute the snapshot for ``event_id`` without persisting it."""
    elements = forest.component_elements(store, event_id)
    events = []
    for element in elements:
        event = store.get_event(element)
        if event is None:
            raise errors.UnknownEventError(element)
        events.append(event)

    projection = micro_projection(store, elements)
    return core.ComponentMetrics(
        size=len(elements),
        diameter=component_diameter(projection, oracle),
        velocity=component_velocity(events),
    )


class MetricsEngine(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Computes and persists metrics for processed events in parallel.

    Each event's computation only reads the forest and only writes the
    event's own fields, so batches run concurrently without coordination.
    """

    workers: int | None = None  # None = os.cpu_count()
    batch_size: int = 256
    max_retries: int = 3
    backoff_seconds: float = 0.05

    @property
    def effective_workers(self) -> int:
        return max(1, self.workers or os.cpu_count() or 1)

    def run(
        self,
        store: store_base.BaseGraphStore,
        oracle: oracles.BaseOracle,
        event_ids: list[str] | None = None,
        *,
        recompute: bool = False,
    ) -> MetricsResult:
        """Compute metrics for processed events that do not have them yet.

        Args:
            store: Graph store holding the forest.
            oracle: Shortest-path oracle for diameters.
            event_ids: Events to compute. Defaults to every processed event.
            recompute: Overwrite metrics that already exist.

        Returns:
            MetricsResult listing computed events and per-event failures.
        """
        if event_ids is None:
            event_ids = [e.id for e in store.list_events()]

        result = MetricsResult()
        targets: list[str] = []
        for event_id in event_ids:
            if not store.is_processed(event_id):
                result.skipped += 1
            elif not recompute and store.get_metrics(event_id) is not None:
                result.skipped += 1
            else:
                targets.append(event_id)

        if not targets:
            return result

        batches = [
            targets[i : i + self.batch_size] for i in range(0, len(targets), self.batch_size)
        ]
        with ThreadPoolExecutor(max_workers=self.effective_workers) as pool:
            for computed, failed in pool.map(
                lambda batch: self._run_batch(store, oracle, batch), batches
            ):
                result.computed.extend(computed)
                result.failed.update(failed)

        if result.failed:
            logger.error(
                "Metrics failed for %d event(s), e.g. '%s'",
                len(result.failed),
                next(iter(result.failed)),
            )
        logger.info(
            "Computed metrics for %d event(s), skipped %d",
            len(result.computed),
            result.skipped,
        )
        return result

    def _run_batch(
        self,
        store: store_base.BaseGraphStore,
        oracle: oracles.BaseOracle,
        batch: list[str],
    ) -> tuple[list[str], dict[str, str]]:
        computed: list[str] = []
        failed: dict[str, str] = {}
        for event_id in batch:
            try:
                self._persist(store, oracle, event_id)
            except errors.StructuralViolationError:
                raise
            except (errors.OracleUnavailableError, errors.StoreError) as exc:
                failed[event_id] = str(exc)
                continue
            computed.append(event_id)
        return computed, failed

    def _persist(
        self,
        store: store_base.BaseGraphStore,
        oracle: oracles.BaseOracle,
        event_id: str,
    ) -> None:
        """Compute and write one snapshot, retrying it on transient errors."""

        def attempt() -> None:
            store.set_metrics(event_id, compute_metrics(store, oracle, event_id))

        retry.retry_call(
            attempt,
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            description=f"metrics for event '{event_id}'",
        )
