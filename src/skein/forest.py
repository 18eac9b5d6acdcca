"""Temporal union-find forest.

Every processed event is a node. When an event is merged it receives one
edge from the current head of each prior component it touches, and the
old heads become internal nodes. There is no path compression: a node's
head is found by walking outgoing edges, and the component as it existed
at any event is found by walking incoming edges backwards from it.

Example:
    merges = merge_group(store, ["a1", "a2", "a3"])
    head = find_head(store, "a1")             # "a3"
    members = component_elements(store, "a2")  # ["a1", "a2"]
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Protocol

import skein.core as core
import skein.errors as errors
import skein.store.base as store_base


class ForestView(Protocol):
    """The read operations a merge needs. Stores and staged views provide them."""

    def get_event(self, event_id: str) -> core.Event | None: ...

    def is_processed(self, event_id: str) -> bool: ...

    def forest_successor(self, event_id: str) -> str | None: ...

    def precedence_predecessors(self, event_id: str) -> list[str]: ...

    def precedence_successors(self, event_id: str) -> list[str]: ...


class StagedForest:
    """Read-through view that buffers a group's merges until commit.

    Reads fall through to the store unless the group has already merged
    the node, so later events in the group see the heads produced by
    earlier ones while nothing is visible to other writers yet.
    """

    def __init__(self, store: store_base.BaseGraphStore) -> None:
        self._store = store
        self._events: dict[str, core.Event | None] = {}
        self._processed: set[str] = set()
        self._successor: dict[str, str] = {}
        self.merges: list[core.Merge] = []

    def get_event(self, event_id: str) -> core.Event | None:
        if event_id not in self._events:
            self._events[event_id] = self._store.get_event(event_id)
        return self._events[event_id]

    def is_processed(self, event_id: str) -> bool:
        return event_id in self._processed or self._store.is_processed(event_id)

    def forest_successor(self, event_id: str) -> str | None:
        if event_id in self._successor:
            return self._successor[event_id]
        return self._store.forest_successor(event_id)

    def precedence_predecessors(self, event_id: str) -> list[str]:
        return self._store.precedence_predecessors(event_id)

    def precedence_successors(self, event_id: str) -> list[str]:
        return self._store.precedence_successors(event_id)

    def apply(self, merge: core.Merge) -> None:
        for head in merge.heads:
            self._successor[head] = merge.event_id
        self._processed.add(merge.event_id)
        self.merges.append(merge)


def find_head(
    view: ForestView,
    event_id: str,
    *,
    exclude: str | None = None,
    before: tuple[datetime, str] | None = None,
) -> str:
    """Walk outgoing forest edges from ``event_id`` to its current head.

    Args:
        view: Store or staged view to read from.
        event_id: Starting node.
        exclude: Node the walk must not enter; the node before it is
            returned as the head.
        before: Order key bound. The walk stops at the last node whose
            successor is not strictly earlier, so the head it returns is
            the one that existed at that point in time.

    Raises:
        ForestCycleError: If the walk revisits a node.
    """
    path = [event_id]
    seen = {event_id}
    node = event_id
    while True:
        nxt = view.forest_successor(node)
        if nxt is None or nxt == exclude:
            return node
        if before is not None and order_key(view, nxt) >= before:
            return node
        if nxt in seen:
            raise errors.ForestCycleError(event_id, path + [nxt])
        seen.add(nxt)
        path.append(nxt)
        node = nxt


def order_key(view: ForestView, event_id: str) -> tuple[datetime, str]:
    event = view.get_event(event_id)
    if event is None:
        raise errors.UnknownEventError(event_id)
    return event.order_key


def plan_merge(view: ForestView, event_id: str) -> core.Merge:
    """Work out which heads ``event_id`` absorbs, without writing anything.

    Heads of the event's processed direct predecessors are deduplicated
    and ordered by (timestamp, id).

    Raises:
        LateArrivalError: If a newer event on one of the event's chains,
            or a newer head, is already merged. The forest would need a
            backwards edge, so the event is left for a rebuild.
    """
    key = order_key(view, event_id)
    for succ in view.precedence_successors(event_id):
        if view.is_processed(succ):
            raise errors.LateArrivalError(event_id, succ)

    heads = {
        find_head(view, pred)
        for pred in view.precedence_predecessors(event_id)
        if view.is_processed(pred)
    }
    for head in heads:
        if order_key(view, head) > key:
            raise errors.LateArrivalError(event_id, head)
    ordered = sorted(heads, key=lambda h: order_key(view, h))
    return core.Merge(event_id=event_id, heads=tuple(ordered))


def merge_group(store: store_base.BaseGraphStore, event_ids: list[str]) -> list[core.Merge]:
    """Merge one component group into the forest, all or nothing.

    Events are processed strictly by (timestamp, id). Already processed
    events are skipped, so rerunning a group is a no-op.

    Returns:
        The merges committed, in processing order.

    Raises:
        MergeConflictError: If another writer changed one of the group's
            heads first. Nothing from this group is written.
        LateArrivalError: If an event precedes an already merged event of
            its component. Nothing from this group is written.
    """
    staged = StagedForest(store)
    events = sorted(event_ids, key=lambda eid: order_key(staged, eid))
    for event_id in events:
        if staged.is_processed(event_id):
            continue
        staged.apply(plan_merge(staged, event_id))
    if staged.merges:
        store.commit_group(staged.merges)
    return staged.merges


def merge_event(store: store_base.BaseGraphStore, event_id: str) -> core.Merge | None:
    """Merge a single event. Returns None if it was already processed."""
    merges = merge_group(store, [event_id])
    return merges[0] if merges else None


def component_elements(store: store_base.BaseGraphStore, event_id: str) -> list[str]:
    """Events in the component as it existed at ``event_id``'s timestamp.

    Collects ``event_id`` and everything reachable by walking incoming
    forest edges backwards from it.

    Raises:
        ForestCycleError: If a node is reached twice.
    """
    seen = {event_id}
    queue = deque([event_id])
    while queue:
        node = queue.popleft()
        for pred in store.forest_predecessors(node):
            if pred in seen:
                raise errors.ForestCycleError(event_id, [pred, node])
            seen.add(pred)
            queue.append(pred)
    return sorted(seen)


def heads(store: store_base.BaseGraphStore) -> list[str]:
    """Current heads: processed events with no outgoing forest edge."""
    absorbed = {src for src, _ in store.forest_edges()}
    return [
        e.id
        for e in store.list_events()
        if e.id not in absorbed and store.is_processed(e.id)
    ]


def check_forest(store: store_base.BaseGraphStore) -> None:
    """Verify the forest invariants over the whole store.

    Raises:
        BranchingForestError: If a node has more than one outgoing edge.
        ForestCycleError: If forest edges form a cycle.
        StructuralViolationError: If an edge touches an unprocessed event
            or points backwards in time.
    """
    edges = store.forest_edges()
    successors: dict[str, list[str]] = {}
    for head, event_id in edges:
        successors.setdefault(head, []).append(event_id)

    for node, targets in successors.items():
        if len(targets) > 1:
            raise errors.BranchingForestError(node, targets)

    # With out-degree <= 1 every walk is a simple chain; colour nodes to find loops
    done: set[str] = set()
    for start in successors:
        path: list[str] = []
        on_path: set[str] = set()
        node: str | None = start
        while node is not None and node not in done:
            if node in on_path:
                raise errors.ForestCycleError(start, path + [node])
            on_path.add(node)
            path.append(node)
            nxt = successors.get(node)
            node = nxt[0] if nxt else None
        done.update(on_path)

    events = {e.id: e for e in store.list_events()}
    for head, event_id in edges:
        for node in (head, event_id):
            if node not in events or not store.is_processed(node):
                raise errors.StructuralViolationError(
                    context="Checking forest edges",
                    cause=f"Edge {head} -> {event_id} touches unprocessed event '{node}'",
                    fix="Run a full reset and rebuild of the forest.",
                )
        if events[event_id].order_key < events[head].order_key:
            raise errors.StructuralViolationError(
                context="Checking forest edges",
                cause=f"Edge {head} -> {event_id} points backwards in time",
                fix="Run a full reset and rebuild of the forest.",
            )
