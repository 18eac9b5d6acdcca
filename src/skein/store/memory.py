"""In-memory graph store.

Holds the whole graph in Python dictionaries guarded by one re-entrant
lock. Intended for tests and single-process pipelines; state is lost
when the process exits.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Literal

import pydantic as pdt

import skein.core as core
import skein.errors as errors
import skein.store.base as base


class MemoryGraphStore(base.BaseGraphStore):
    """Dictionary-backed graph store.

    Example:
        store = MemoryGraphStore()
        store.initialize()
        store.add_event(event)
        store.add_touch(event.id, Entity(type="ip", key="10.0.0.5"))
    """

    kind: Literal["memory"] = "memory"

    _lock: threading.RLock = pdt.PrivateAttr(default_factory=threading.RLock)
    _events: dict[str, core.Event] = pdt.PrivateAttr(default_factory=dict)
    # dicts used as insertion-ordered sets
    _touch: dict[str, dict[core.Entity, None]] = pdt.PrivateAttr(
        default_factory=lambda: defaultdict(dict)
    )
    _entity_events: dict[core.Entity, dict[str, None]] = pdt.PrivateAttr(
        default_factory=lambda: defaultdict(dict)
    )
    # src -> dst -> entities whose chain carries the edge
    _prec_out: dict[str, dict[str, set[core.Entity]]] = pdt.PrivateAttr(
        default_factory=lambda: defaultdict(lambda: defaultdict(set))
    )
    _prec_in: dict[str, dict[str, set[core.Entity]]] = pdt.PrivateAttr(
        default_factory=lambda: defaultdict(lambda: defaultdict(set))
    )
    _chains: dict[core.Entity, set[tuple[str, str]]] = pdt.PrivateAttr(
        default_factory=lambda: defaultdict(set)
    )
    _forest_out: dict[str, list[str]] = pdt.PrivateAttr(default_factory=lambda: defaultdict(list))
    _forest_in: dict[str, list[str]] = pdt.PrivateAttr(default_factory=lambda: defaultdict(list))
    _processed: set[str] = pdt.PrivateAttr(default_factory=set)
    _metrics: dict[str, core.ComponentMetrics] = pdt.PrivateAttr(default_factory=dict)

    def initialize(self) -> None:
        """Nothing to create; present for interface parity."""
        pass

    def teardown(self) -> None:
        with self._lock:
            self._events.clear()
            self._touch.clear()
            self._entity_events.clear()
            self._clear_derived()

    # -- events ------------------------------------------------------------

    def add_event(self, event: core.Event) -> bool:
        with self._lock:
            if event.id in self._events:
                return False
            self._events[event.id] = event
            return True

    def get_event(self, event_id: str) -> core.Event | None:
        with self._lock:
            return self._events.get(event_id)

    def list_events(self) -> list[core.Event]:
        with self._lock:
            return sorted(self._events.values(), key=lambda e: e.order_key)

    def events_between(self, start: datetime, end: datetime) -> list[core.Event]:
        return [e for e in self.list_events() if start <= e.timestamp <= end]

    # -- touch edges -------------------------------------------------------

    def add_touch(self, event_id: str, entity: core.Entity) -> bool:
        with self._lock:
            if entity in self._touch[event_id]:
                return False
            self._touch[event_id][entity] = None
            self._entity_events[entity][event_id] = None
            return True

    def entities_of(self, event_id: str) -> list[core.Entity]:
        with self._lock:
            return list(self._touch.get(event_id, {}))

    def events_touching(self, entity: core.Entity) -> list[core.Event]:
        with self._lock:
            events = [
                self._events[eid]
                for eid in self._entity_events.get(entity, {})
                if eid in self._events
            ]
        return sorted(events, key=lambda e: e.order_key)

    def list_entities(self) -> list[core.Entity]:
        with self._lock:
            return list(self._entity_events)

    # -- precedence edges --------------------------------------------------

    def add_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        with self._lock:
            if (src, dst) in self._chains[entity]:
                return False
            self._chains[entity].add((src, dst))
            self._prec_out[src][dst].add(entity)
            self._prec_in[dst][src].add(entity)
            return True

    def remove_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        with self._lock:
            if (src, dst) not in self._chains.get(entity, set()):
                return False
            self._chains[entity].discard((src, dst))
            for index, a, b in ((self._prec_out, src, dst), (self._prec_in, dst, src)):
                index[a][b].discard(entity)
                if not index[a][b]:
                    del index[a][b]
            return True

    def chain_edges(self, entity: core.Entity) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._chains.get(entity, set()))

    def precedence_predecessors(self, event_id: str) -> list[str]:
        with self._lock:
            return sorted(self._prec_in.get(event_id, {}))

    def precedence_successors(self, event_id: str) -> list[str]:
        with self._lock:
            return sorted(self._prec_out.get(event_id, {}))

    def precedence_edges(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted((src, dst) for src, dsts in self._prec_out.items() for dst in dsts)

    # -- forest ------------------------------------------------------------

    def forest_successor(self, event_id: str) -> str | None:
        with self._lock:
            successors = self._forest_out.get(event_id, [])
            if len(successors) > 1:
                raise errors.BranchingForestError(event_id, list(successors))
            return successors[0] if successors else None

    def forest_predecessors(self, event_id: str) -> list[str]:
        with self._lock:
            return list(self._forest_in.get(event_id, []))

    def forest_edges(self) -> list[tuple[str, str]]:
        with self._lock:
            return [(head, dst) for head, dsts in self._forest_out.items() for dst in dsts]

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._processed

    def unprocessed_events(self) -> list[core.Event]:
        with self._lock:
            pending = [e for eid, e in self._events.items() if eid not in self._processed]
        return sorted(pending, key=lambda e: e.order_key)

    def commit_group(self, merges: list[core.Merge]) -> None:
        with self._lock:
            # Validate the whole group before touching any state
            extended: set[str] = set()
            merged: set[str] = set()
            for merge in merges:
                if merge.event_id in self._processed or merge.event_id in merged:
                    raise errors.MergeConflictError(merge.event_id)
                for head in merge.heads:
                    if self._forest_out.get(head) or head in extended:
                        raise errors.MergeConflictError(merge.event_id, head)
                    extended.add(head)
                merged.add(merge.event_id)

            for merge in merges:
                for head in merge.heads:
                    self._forest_out[head].append(merge.event_id)
                    self._forest_in[merge.event_id].append(head)
                self._processed.add(merge.event_id)

    # -- metrics -----------------------------------------------------------

    def set_metrics(self, event_id: str, metrics: core.ComponentMetrics) -> None:
        with self._lock:
            self._metrics[event_id] = metrics

    def get_metrics(self, event_id: str) -> core.ComponentMetrics | None:
        with self._lock:
            return self._metrics.get(event_id)

    # -- reset -------------------------------------------------------------

    def reset_derived(self) -> None:
        with self._lock:
            self._clear_derived()

    def _clear_derived(self) -> None:
        self._chains.clear()
        self._prec_out.clear()
        self._prec_in.clear()
        self._forest_out.clear()
        self._forest_in.clear()
        self._processed.clear()
        self._metrics.clear()
