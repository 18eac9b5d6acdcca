"""Tests for the metrics engine."""

from __future__ import annotations

from unittest.mock import patch

import pydantic as pdt
import pytest

import skein.batch as batch
import skein.chain as chain
import skein.core as core
import skein.errors as errors
import skein.forest as forest
import skein.metrics as metrics
import skein.oracles as oracles
import skein.store as store

IP = core.Entity(type="ip", key="10.0.0.5")
EMAIL = core.Entity(type="email", key="a@example.com")
BANK = core.Entity(type="bank_account", key="NL00BANK0123456789")
DEVICE = core.Entity(type="device", key="d-1")


class FlakyMetricsStore(store.MemoryGraphStore):
    """Memory store whose next snapshot writes fail with lock contention."""

    _failures_left: list[int] = pdt.PrivateAttr(default_factory=lambda: [0])

    def fail_next(self, failures: int) -> None:
        self._failures_left[0] = failures

    def set_metrics(self, event_id: str, snapshot: core.ComponentMetrics) -> None:
        if self._failures_left[0] > 0:
            self._failures_left[0] -= 1
            raise errors.TransientStoreError(
                context="Writing metrics",
                cause="database is locked",
                fix="Retry the unit of work.",
            )
        super().set_metrics(event_id, snapshot)


def _pair(graph_store, ingest) -> None:
    """p1 and p2 on one IP, merged."""
    ingest(graph_store, "p1", 0, IP)
    ingest(graph_store, "p2", 1, IP)
    chain.build_chains(graph_store)
    forest.merge_group(graph_store, ["p1", "p2"])


@pytest.fixture
def chained(graph_store, ingest, oracle):
    """a1 -IP- a2 -email/bank- a3 -device- a4, merged in order, 10s apart."""
    ingest(graph_store, "a1", 0, IP)
    ingest(graph_store, "a2", 10, IP, EMAIL, BANK)
    ingest(graph_store, "a3", 20, EMAIL, BANK, DEVICE)
    ingest(graph_store, "a4", 30, DEVICE)
    chain.build_chains(graph_store)
    batch.BatchCoordinator(workers=2).run(graph_store, oracle)
    return graph_store


class TestComputeMetrics:
    def test_four_event_chain(self, chained, oracle) -> None:
        """Size 4, diameter 2, three arrivals over thirty seconds."""
        snapshot = metrics.compute_metrics(chained, oracle, "a4")

        assert snapshot.size == 4
        assert snapshot.diameter == 2
        assert snapshot.velocity == pytest.approx(3 / 30)

    @pytest.mark.parametrize(
        ("event_id", "size", "diameter", "velocity"),
        [("a1", 1, 0, 0.0), ("a2", 2, 1, 0.1), ("a3", 3, 2, 0.1)],
    )
    def test_as_of_snapshots(self, chained, oracle, event_id, size, diameter, velocity) -> None:
        """Each event sees only the component as it was at its time."""
        snapshot = metrics.compute_metrics(chained, oracle, event_id)

        assert (snapshot.size, snapshot.diameter) == (size, diameter)
        assert snapshot.velocity == pytest.approx(velocity)

    def test_event_without_entities(self, memory_store, ingest, oracle) -> None:
        """A bare singleton has no edges, so no diameter."""
        ingest(memory_store, "lonely", 0)
        forest.merge_event(memory_store, "lonely")

        snapshot = metrics.compute_metrics(memory_store, oracle, "lonely")

        assert snapshot == core.ComponentMetrics(size=1, diameter=None, velocity=0.0)

    def test_pair_sharing_one_entity(self, graph_store, ingest, oracle) -> None:
        """Two events on one IP are wider than either alone."""
        _pair(graph_store, ingest)

        pair = metrics.compute_metrics(graph_store, oracle, "p2")
        single = metrics.compute_metrics(graph_store, oracle, "p1")

        assert pair == core.ComponentMetrics(size=2, diameter=1, velocity=1.0)
        assert single.diameter == 0

    @pytest.mark.parametrize(("hops", "diameter"), [(1, 1), (2, 1), (3, 2), (4, 2), (5, 3)])
    def test_diameter_never_shrinks_with_path_length(self, oracle, hops, diameter) -> None:
        """Halving rounds up, so a longer path never gives a smaller diameter."""
        nodes = [f"n{i}" for i in range(hops + 1)]
        projection = metrics.Projection(
            events=[nodes[0], nodes[-1]],
            nodes=nodes,
            edges=list(zip(nodes, nodes[1:])),
        )

        assert metrics.component_diameter(projection, oracle) == diameter

    def test_zero_span_velocity(self, memory_store, ingest, oracle) -> None:
        """Simultaneous events have zero velocity, not a division error."""
        ingest(memory_store, "a", 5, IP)
        ingest(memory_store, "b", 5, IP)
        chain.build_chains(memory_store)
        forest.merge_group(memory_store, ["a", "b"])

        snapshot = metrics.compute_metrics(memory_store, oracle, "b")

        assert snapshot.size == 2
        assert snapshot.velocity == 0.0

    def test_oracles_agree(self, chained) -> None:
        """NetworkX and brute-force oracles give identical snapshots."""
        for event_id in ("a1", "a2", "a3", "a4"):
            assert metrics.compute_metrics(
                chained, oracles.NetworkxOracle(), event_id
            ) == metrics.compute_metrics(chained, oracles.BruteForceOracle(), event_id)


class TestMicroProjection:
    def test_bounded_to_component(self, chained) -> None:
        """Later events and their entities stay out of the projection."""
        projection = metrics.micro_projection(chained, ["a1", "a2"])

        assert set(projection.nodes) == {"a1", "a2", IP, EMAIL, BANK}
        assert DEVICE not in projection.nodes
        assert ("a1", "a2") in projection.edges
        assert ("a2", "a3") not in projection.edges


class TestMetricsEngine:
    def test_persists_all_processed_events(self, chained, oracle) -> None:
        """Every processed event gets its snapshot."""
        result = metrics.MetricsEngine(workers=2, batch_size=2).run(chained, oracle)

        assert result.is_success
        assert sorted(result.computed) == ["a1", "a2", "a3", "a4"]
        assert chained.get_metrics("a4").size == 4

    def test_computed_once(self, chained, oracle) -> None:
        """Existing snapshots are immutable unless recompute is asked for."""
        engine = metrics.MetricsEngine(workers=2)
        engine.run(chained, oracle)
        stale = core.ComponentMetrics(size=99, diameter=None, velocity=0.0)
        chained.set_metrics("a4", stale)

        second = engine.run(chained, oracle)
        assert second.computed == []
        assert second.skipped == 4
        assert chained.get_metrics("a4") == stale

        engine.run(chained, oracle, ["a4"], recompute=True)
        assert chained.get_metrics("a4").size == 4

    def test_unprocessed_skipped(self, memory_store, ingest, oracle) -> None:
        """Events not yet in the forest have no snapshot to compute."""
        ingest(memory_store, "pending", 0, IP)

        result = metrics.MetricsEngine().run(memory_store, oracle)

        assert result.computed == []
        assert result.skipped == 1
        assert memory_store.get_metrics("pending") is None

    def test_oracle_failure_reported(self, chained, oracle) -> None:
        """An oracle outage fails the affected events explicitly."""
        outage = errors.OracleUnavailableError("bruteforce", "shortest_path_lengths", "down")

        with patch.object(oracles.BruteForceOracle, "shortest_path_lengths", side_effect=outage):
            result = metrics.MetricsEngine(workers=2).run(chained, oracle)

        assert not result.is_success
        assert sorted(result.failed) == ["a1", "a2", "a3", "a4"]
        assert chained.get_metrics("a4") is None

    def test_transient_write_retried(self, ingest, oracle) -> None:
        """A snapshot write that hits a lock is retried, not reported."""
        graph_store = FlakyMetricsStore()
        graph_store.fail_next(1)
        _pair(graph_store, ingest)

        result = metrics.MetricsEngine(workers=1, backoff_seconds=0.0).run(graph_store, oracle)

        assert result.is_success
        assert sorted(result.computed) == ["p1", "p2"]
        assert graph_store.get_metrics("p2").size == 2

    def test_exhausted_write_retries_reported(self, ingest, oracle) -> None:
        """Writes that keep failing end up in the failed map."""
        graph_store = FlakyMetricsStore()
        graph_store.fail_next(1_000)
        _pair(graph_store, ingest)

        result = metrics.MetricsEngine(workers=1, max_retries=1, backoff_seconds=0.0).run(
            graph_store, oracle
        )

        assert sorted(result.failed) == ["p1", "p2"]
        assert "database is locked" in result.failed["p1"]
        assert graph_store.get_metrics("p1") is None
