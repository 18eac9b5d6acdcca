"""Global test configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import skein.core as core
import skein.oracles as oracles
import skein.store as store

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def at():
    """Timestamp factory: seconds after a fixed UTC origin."""

    def _at(seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)

    return _at


@pytest.fixture
def make_event(at):
    """Event factory keyed by id and offset in seconds."""

    def _make(event_id: str, seconds: float, interaction_type: str = "transaction") -> core.Event:
        return core.Event(id=event_id, timestamp=at(seconds), interaction_type=interaction_type)

    return _make


@pytest.fixture
def memory_store():
    graph_store = store.MemoryGraphStore()
    graph_store.initialize()
    yield graph_store
    graph_store.teardown()


@pytest.fixture
def sqlite_store(tmp_path):
    graph_store = store.SqliteGraphStore(path=str(tmp_path / "graph.db"))
    graph_store.initialize()
    yield graph_store
    graph_store.teardown()


@pytest.fixture(params=["memory", "sqlite"])
def graph_store(request):
    """Each test using this runs against both store implementations."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def oracle():
    return oracles.BruteForceOracle()


@pytest.fixture
def ingest(make_event):
    """Store an event with its entities: ingest(store, "a1", 0, ip, card)."""

    def _ingest(graph_store, event_id: str, seconds: float, *entities: core.Entity) -> core.Event:
        event = make_event(event_id, seconds)
        graph_store.add_event(event)
        for entity in entities:
            graph_store.add_touch(event_id, entity)
        return event

    return _ingest
