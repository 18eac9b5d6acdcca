"""Entity link index and sequential chain builder.

For each entity, the events that reference it are ordered by
(timestamp, id) and linked with precedence edges between consecutive
events only. Transitivity of "precedes" stands in for the full clique, so
an entity with n events contributes n - 1 edges instead of n(n - 1) / 2.

Linking is idempotent: existing edges are kept, missing ones inserted,
and an edge that skips over a late-arriving event is removed so each
entity's chain stays a single path for any insertion order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import skein.core as core
import skein.errors as errors
import skein.store.base as store_base

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    """Outcome of a linking pass."""

    entities: int = 0
    created: int = 0
    removed: int = 0
    late_events: list[str] = field(default_factory=list)


def link_index(store: store_base.BaseGraphStore, entity: core.Entity) -> list[core.Event]:
    """Return the entity's events, deduplicated, in (timestamp, id) order."""
    seen: dict[str, core.Event] = {}
    for event in store.events_touching(entity):
        seen.setdefault(event.id, event)
    return sorted(seen.values(), key=lambda e: e.order_key)


def consecutive_pairs(events: list[core.Event]) -> list[tuple[str, str]]:
    ids = [e.id for e in events]
    return list(zip(ids, ids[1:]))


def link_entity(
    store: store_base.BaseGraphStore, entity: core.Entity
) -> tuple[int, int, list[str]]:
    """Link one entity's events into a precedence chain.

    Returns:
        Tuple of (edges created, stale edges removed, late event ids). A
        late event is an unprocessed event linked in front of an event
        that is already part of the forest.
    """
    wanted = consecutive_pairs(link_index(store, entity))
    current = set(store.chain_edges(entity))

    removed = 0
    for src, dst in sorted(current - set(wanted)):
        store.remove_precedence(src, dst, entity)
        removed += 1

    created = 0
    late: list[str] = []
    for src, dst in wanted:
        if (src, dst) in current:
            continue
        if store.add_precedence(src, dst, entity):
            created += 1
            if store.is_processed(dst) and not store.is_processed(src):
                late.append(src)
    return created, removed, late


def build_chains(
    store: store_base.BaseGraphStore,
    entities: Iterable[core.Entity] | None = None,
) -> ChainResult:
    """Link the precedence chains of the given entities (all when None).

    Args:
        store: Graph store to read touch edges from and write links to.
        entities: Entities to (re)link. Defaults to every known entity.

    Returns:
        ChainResult with counts of created and removed edges.
    """
    targets = store.list_entities() if entities is None else list(dict.fromkeys(entities))
    result = ChainResult()
    for entity in targets:
        created, removed, late = link_entity(store, entity)
        result.entities += 1
        result.created += created
        result.removed += removed
        result.late_events.extend(late)

    if result.late_events:
        late_ids = sorted(set(result.late_events))
        logger.warning(
            "%d late event(s) precede already-merged events (%s); "
            "they stay unmerged until a rebuild",
            len(late_ids),
            ", ".join(late_ids[:10]),
        )
    logger.info(
        "Linked %d entities: %d edges created, %d stale edges removed",
        result.entities,
        result.created,
        result.removed,
    )
    return result


def entities_to_link(store: store_base.BaseGraphStore) -> list[core.Entity]:
    """Entities touched by events that are not yet in the forest."""
    seen: dict[core.Entity, None] = {}
    for event in store.unprocessed_events():
        for entity in store.entities_of(event.id):
            seen.setdefault(entity, None)
    return list(seen)


def check_chain(store: store_base.BaseGraphStore, entity: core.Entity) -> None:
    """Verify the entity's precedence edges form one chronological path.

    Raises:
        BranchingChainError: If any event has several chain successors or
            predecessors, an edge runs backwards in time, or the chain
            skips or misses events.
    """
    events = link_index(store, entity)
    order = {e.id: i for i, e in enumerate(events)}
    edges = store.chain_edges(entity)

    out_degree: dict[str, int] = {}
    in_degree: dict[str, int] = {}
    for src, dst in edges:
        if src not in order or dst not in order:
            raise errors.BranchingChainError(
                entity.label, f"Edge {src} -> {dst} links an event that does not touch the entity"
            )
        if order[dst] <= order[src]:
            raise errors.BranchingChainError(
                entity.label, f"Edge {src} -> {dst} runs backwards in time"
            )
        out_degree[src] = out_degree.get(src, 0) + 1
        in_degree[dst] = in_degree.get(dst, 0) + 1

    for node, degree in (*out_degree.items(), *in_degree.items()):
        if degree > 1:
            raise errors.BranchingChainError(entity.label, f"Chain branches at event {node}")

    missing = set(consecutive_pairs(events)) - set(edges)
    if missing:
        src, dst = min(missing)
        raise errors.BranchingChainError(entity.label, f"Missing link {src} -> {dst}")
