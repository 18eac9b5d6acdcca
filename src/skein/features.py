"""Feature extraction for training (backward) and real-time (forward) use.

Both paths aggregate the persisted snapshots of the components an event
absorbs and emit the same ``FeatureRecord`` schema:

* backward: the heads already merged into a historical event, read from
  its incoming forest edges;
* forward: the heads a new, unmerged event would absorb right now, found
  by walking forward from earlier events that share an entity with it.

For an event that has not been merged yet, running forward extraction
and then merging and running backward extraction yields the same record.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

import pyarrow as pa

import skein.core as core
import skein.errors as errors
import skein.forest as forest
import skein.metrics as metrics
import skein.oracles as oracles
import skein.store.base as store_base
import skein.types as types

logger = logging.getLogger(__name__)


def aggregate(event_id: str, snapshots: list[core.ComponentMetrics]) -> core.FeatureRecord:
    """Fold component snapshots into one feature record.

    An empty list is not an error: the event bridges nothing, so the
    maxima are None and the count is 0.
    """
    if not snapshots:
        return core.FeatureRecord(event_id=event_id)

    diameters = [s.diameter for s in snapshots if s.diameter is not None]
    return core.FeatureRecord(
        event_id=event_id,
        max_component_size=max(s.size for s in snapshots),
        max_component_diameter=max(diameters) if diameters else None,
        max_component_velocity=max(s.velocity for s in snapshots),
        distinct_component_count=len(snapshots),
    )


def head_metrics(
    store: store_base.BaseGraphStore,
    oracle: oracles.BaseOracle,
    head: str,
) -> core.ComponentMetrics:
    """Persisted snapshot of ``head``, computed on the fly when missing.

    The read path never writes, so a computed snapshot is not persisted.
    """
    snapshot = store.get_metrics(head)
    if snapshot is None:
        logger.debug("No persisted metrics for head '%s', computing read-only", head)
        snapshot = metrics.compute_metrics(store, oracle, head)
    return snapshot


def extract_training(
    store: store_base.BaseGraphStore,
    event_id: str,
    cutoff: datetime,
    oracle: oracles.BaseOracle | None = None,
) -> core.FeatureRecord:
    """Backward extraction for a historical event.

    Args:
        store: Graph store holding the forest.
        event_id: Event to extract features for.
        cutoff: Point-in-time bound; nothing newer is read.
        oracle: Shortest-path oracle for heads missing metrics.

    Raises:
        UnknownEventError: If the store does not hold the event.
        CutoffViolationError: If the event is newer than ``cutoff``.
    """
    event = store.get_event(event_id)
    if event is None:
        raise errors.UnknownEventError(event_id)
    if event.timestamp > cutoff:
        raise errors.CutoffViolationError(
            event_id, event.timestamp.isoformat(), cutoff.isoformat()
        )

    oracle = oracle or oracles.NetworkxOracle()
    snapshots = []
    for head in store.forest_predecessors(event_id):
        head_event = store.get_event(head)
        if head_event is None or head_event.timestamp > cutoff:
            continue
        snapshots.append(head_metrics(store, oracle, head))
    return aggregate(event_id, snapshots)


def candidate_events(
    store: store_base.BaseGraphStore,
    event: core.Event,
    entities: Iterable[core.Entity],
) -> list[str]:
    """Processed events that share an entity with ``event`` and precede it."""
    seen: dict[str, None] = {}
    for entity in dict.fromkeys(entities):
        for other in store.events_touching(entity):
            if other.order_key >= event.order_key or other.id in seen:
                continue
            if store.is_processed(other.id):
                seen[other.id] = None
    return list(seen)


def extract_realtime(
    store: store_base.BaseGraphStore,
    event: core.Event,
    entities: Iterable[core.Entity],
    oracle: oracles.BaseOracle | None = None,
) -> core.FeatureRecord:
    """Forward extraction for a new event that has not been merged.

    Answers which heads the event would absorb if processed now, without
    mutating anything. Walks never pass through the event itself, so an
    event that is already stored and being re-scored is handled too, and
    they stop before any node at or after the event's (timestamp, id).

    Raises:
        FeaturesUnavailableError: If the store fails. Scoring must not
            fall back to empty features.
        StructuralViolationError: If the forest is corrupt.
    """
    oracle = oracle or oracles.NetworkxOracle()
    try:
        heads: dict[str, None] = {}
        for candidate in candidate_events(store, event, entities):
            head = forest.find_head(
                store, candidate, exclude=event.id, before=event.order_key
            )
            heads.setdefault(head, None)
        ordered = sorted(heads, key=lambda h: forest.order_key(store, h))
        snapshots = [head_metrics(store, oracle, head) for head in ordered]
    except errors.StoreError as exc:
        raise errors.FeaturesUnavailableError(event.id, str(exc.cause)) from exc
    except errors.OracleUnavailableError as exc:
        raise errors.FeaturesUnavailableError(event.id, str(exc.cause)) from exc
    return aggregate(event.id, snapshots)


def to_table(records: list[core.FeatureRecord]) -> pa.Table:
    """Convert feature records to an Arrow table with ``FEATURE_SCHEMA``."""
    rows = [r.model_dump() for r in records]
    return pa.Table.from_pylist(rows, schema=types.FEATURE_SCHEMA)
