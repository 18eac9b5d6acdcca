"""Tests for the batch coordinator."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pydantic as pdt
import pytest

import skein._retry as retry
import skein.batch as batch
import skein.chain as chain
import skein.core as core
import skein.errors as errors
import skein.forest as forest
import skein.oracles as oracles
import skein.store as store

IP = core.Entity(type="ip", key="10.0.0.5")
EMAIL = core.Entity(type="email", key="a@example.com")
CARD = core.Entity(type="credit_card", key="4111")
PHONE = core.Entity(type="phone", key="+31600000000")


class FlakyStore(store.MemoryGraphStore):
    """Memory store whose commits fail for groups touching poisoned events."""

    _poison: set[str] = pdt.PrivateAttr(default_factory=set)
    _failures_left: list[int] = pdt.PrivateAttr(default_factory=lambda: [0])
    _commits: list[int] = pdt.PrivateAttr(default_factory=lambda: [0])

    def poison(self, *event_ids: str, failures: int = 1_000) -> None:
        self._poison.update(event_ids)
        self._failures_left[0] = failures

    def commit_group(self, merges: list[core.Merge]) -> None:
        self._commits[0] += 1
        if self._failures_left[0] > 0 and any(m.event_id in self._poison for m in merges):
            self._failures_left[0] -= 1
            raise errors.TransientStoreError(
                context="Committing forest merge",
                cause="database is locked",
                fix="Retry the unit of work.",
            )
        super().commit_group(merges)


def _two_components(graph_store, ingest) -> None:
    """Component A: a1..a3 on IP. Component B: b1, b2 on PHONE."""
    ingest(graph_store, "a1", 0, IP)
    ingest(graph_store, "b1", 1, PHONE)
    ingest(graph_store, "a2", 2, IP)
    ingest(graph_store, "b2", 3, PHONE)
    ingest(graph_store, "a3", 4, IP)
    chain.build_chains(graph_store)


@pytest.fixture
def coordinator():
    return batch.BatchCoordinator(workers=4, max_retries=3, backoff_seconds=0.0, seed=7)


class TestPlanGroups:
    def test_groups_follow_components(self, graph_store, ingest, oracle) -> None:
        """Each weak component becomes one group in time order."""
        _two_components(graph_store, ingest)

        groups, used_fallback = batch.plan_groups(graph_store, oracle)

        assert groups == [["a1", "a2", "a3"], ["b1", "b2"]]
        assert used_fallback is False

    def test_nothing_pending(self, memory_store, oracle) -> None:
        """An empty store plans no groups."""
        assert batch.plan_groups(memory_store, oracle) == ([], False)

    def test_shared_processed_head_joins_groups(self, memory_store, ingest, oracle) -> None:
        """Pending events that would extend the same head share a group."""
        ingest(memory_store, "x1", 0, IP, CARD)
        ingest(memory_store, "x2", 10, IP)
        ingest(memory_store, "a", 20, CARD)
        ingest(memory_store, "b", 30, IP)
        chain.build_chains(memory_store)
        forest.merge_group(memory_store, ["x1", "x2"])

        groups, _ = batch.plan_groups(memory_store, oracle)

        # a reaches x2 only through the forest path x1 -> x2
        assert groups == [["a", "b"]]

    def test_oracle_outage_falls_back(self, memory_store, ingest, caplog) -> None:
        """An unavailable oracle degrades to direct traversal."""
        _two_components(memory_store, ingest)
        outage = errors.OracleUnavailableError("networkx", "weak_components", "timed out")

        with patch.object(oracles.NetworkxOracle, "weak_components", side_effect=outage):
            with caplog.at_level(logging.WARNING, logger="skein.batch"):
                groups, used_fallback = batch.plan_groups(memory_store, oracles.NetworkxOracle())

        assert used_fallback is True
        assert groups == [["a1", "a2", "a3"], ["b1", "b2"]]
        assert "planning by direct traversal" in caplog.text

    def test_incomplete_labels_fall_back(self, memory_store, ingest) -> None:
        """Partial labels are never used for planning."""
        _two_components(memory_store, ingest)

        with patch.object(oracles.NetworkxOracle, "weak_components", return_value={"a1": 0}):
            groups, used_fallback = batch.plan_groups(memory_store, oracles.NetworkxOracle())

        assert used_fallback is True
        assert groups == [["a1", "a2", "a3"], ["b1", "b2"]]


class TestBatchCoordinator:
    def test_merges_independent_components(self, graph_store, ingest, oracle, coordinator) -> None:
        """Concurrent groups build uncorrupted subtrees."""
        _two_components(graph_store, ingest)

        result = coordinator.run(graph_store, oracle)

        assert result.is_success
        assert result.success_count == 2
        assert result.merged_count == 5
        assert sorted(forest.heads(graph_store)) == ["a3", "b2"]
        assert forest.component_elements(graph_store, "a3") == ["a1", "a2", "a3"]
        assert forest.component_elements(graph_store, "b2") == ["b1", "b2"]
        forest.check_forest(graph_store)

    def test_rerun_is_noop(self, memory_store, ingest, oracle, coordinator) -> None:
        """A second run finds nothing to merge."""
        _two_components(memory_store, ingest)
        coordinator.run(memory_store, oracle)
        before = memory_store.forest_edges()

        result = coordinator.run(memory_store, oracle)

        assert result.group_results == []
        assert memory_store.forest_edges() == before

    def test_schedule_does_not_change_forest(self, ingest, oracle) -> None:
        """Different shuffles give the same forest."""
        edges = []
        for seed in (1, 2, 3):
            graph_store = store.MemoryGraphStore()
            _two_components(graph_store, ingest)
            batch.BatchCoordinator(workers=3, seed=seed).run(graph_store, oracle)
            edges.append(sorted(graph_store.forest_edges()))

        assert edges[0] == edges[1] == edges[2]

    def test_transient_failure_retried(self, ingest, oracle, coordinator) -> None:
        """A group that fails transiently is retried as a unit."""
        graph_store = FlakyStore()
        _two_components(graph_store, ingest)
        graph_store.poison("b2", failures=2)

        result = coordinator.run(graph_store, oracle)

        assert result.is_success
        by_first = {r.event_ids[0]: r for r in result.group_results}
        assert by_first["b1"].attempts == 3
        assert by_first["a1"].attempts == 1
        assert sorted(forest.heads(graph_store)) == ["a3", "b2"]

    def test_exhausted_retries_reported_per_group(self, ingest, oracle) -> None:
        """A failing group is reported with its events; others still merge."""
        graph_store = FlakyStore()
        _two_components(graph_store, ingest)
        graph_store.poison("b1")
        coordinator = batch.BatchCoordinator(workers=2, max_retries=1, backoff_seconds=0.0)

        result = coordinator.run(graph_store, oracle)

        assert not result.is_success
        assert result.failed_count == 1
        failed = result.failed_groups[0]
        assert failed.event_ids == ("b1", "b2")
        assert failed.attempts == 2
        assert "database is locked" in failed.error
        assert not graph_store.is_processed("b1")
        assert not graph_store.is_processed("b2")
        assert graph_store.is_processed("a3")

    def test_structural_violation_aborts(self, memory_store, ingest, oracle, coordinator) -> None:
        """Corruption is never retried or swallowed."""
        _two_components(memory_store, ingest)
        cycle = errors.ForestCycleError("a1", ["a1", "a2", "a1"])

        with patch.object(forest, "merge_group", side_effect=cycle):
            with pytest.raises(errors.ForestCycleError):
                coordinator.run(memory_store, oracle)

    def test_late_arrival_fails_group_without_retry(
        self, graph_store, ingest, oracle, coordinator
    ) -> None:
        """A late event's group fails once and leaves the forest untouched."""
        ingest(graph_store, "a", 0, IP)
        ingest(graph_store, "f", 10, IP)
        chain.build_chains(graph_store)
        coordinator.run(graph_store, oracle)
        ingest(graph_store, "e", 5, IP)
        chain.build_chains(graph_store)

        result = coordinator.run(graph_store, oracle)

        assert not result.is_success
        failed = result.failed_groups[0]
        assert "e" in failed.event_ids
        assert failed.attempts == 1
        assert "rebuild" in failed.error
        assert graph_store.forest_edges() == [("a", "f")]
        forest.check_forest(graph_store)

    def test_default_workers(self) -> None:
        """Unset worker count follows the machine."""
        assert batch.BatchCoordinator().effective_workers >= 1
        assert batch.BatchCoordinator(workers=3).effective_workers == 3


class TestConcurrentSameComponent:
    def test_racing_writers_agree(self, graph_store, ingest) -> None:
        """Two writers merging one component produce one consistent outcome."""
        for i in range(6):
            ingest(graph_store, f"e{i}", i, IP, EMAIL)
        chain.build_chains(graph_store)
        event_ids = [f"e{i}" for i in range(6)]
        start = threading.Barrier(2)

        def writer() -> list[core.Merge]:
            start.wait()
            merges, _ = retry.retry_call(
                lambda: forest.merge_group(graph_store, event_ids),
                max_retries=5,
                backoff_seconds=0.0,
                description="race",
            )
            return merges

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [f.result() for f in [pool.submit(writer), pool.submit(writer)]]

        assert sum(len(r) for r in results) == 6
        assert forest.heads(graph_store) == ["e5"]
        assert len(graph_store.forest_edges()) == 5
        forest.check_forest(graph_store)
