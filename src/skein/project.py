"""Project handle for Skein graph connections.

Provides the skein.connect() entry point. The SkeinProject holds the
store and oracle resolved from skein.yaml and wires the pipeline stages
together: ingest, chain linking, batch merges, metrics, and feature
extraction for training and real-time scoring.

Usage:
    import skein

    project = skein.connect()
    project.ingest(event, [card, ip])
    project.refresh()

    # Offline: point-in-time training features
    table = project.training_features(start=jan_1, end=apr_1)

    # Online: score an event that has not been merged yet
    record = project.score(new_event, [card, device])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pyarrow as pa

import skein._retry as retry
import skein.batch as batch
import skein.chain as chain
import skein.core as core
import skein.errors as errors
import skein.features as features
import skein.forest as forest
import skein.metrics as metrics
import skein.oracles as oracles
import skein.settings as settings
import skein.store as store
import skein.types as types

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Outcome of one incremental refresh or full rebuild."""

    chains: chain.ChainResult
    merges: batch.BatchResult
    metrics: metrics.MetricsResult

    @property
    def is_success(self) -> bool:
        return self.merges.is_success and self.metrics.is_success


class SkeinProject:
    """Runtime handle for a Skein project.

    Created via skein.connect(). Holds the graph store and oracle
    configured for the active environment.

    Not a Pydantic model -- this is a runtime handle, not configuration.
    """

    def __init__(self, skein_settings: settings.SkeinSettings) -> None:
        self._settings = skein_settings
        env_config = skein_settings.active_environment
        self._store: store.BaseGraphStore = _resolve_store_path(
            env_config.store, skein_settings.config_path
        )
        self._oracle: oracles.BaseOracle = env_config.oracle
        self._coordinator = batch.BatchCoordinator(**env_config.batch.model_dump())
        self._metrics_engine = metrics.MetricsEngine(**env_config.metrics.model_dump())
        self._feature_settings = env_config.features
        self._store.initialize()

    @property
    def name(self) -> str:
        """Project name from skein.yaml."""
        return self._settings.name

    @property
    def env(self) -> str:
        """Active environment name."""
        return self._settings.active_env

    @property
    def store(self) -> store.BaseGraphStore:
        return self._store

    @property
    def oracle(self) -> oracles.BaseOracle:
        return self._oracle

    # -- ingestion -----------------------------------------------------------

    def ingest(self, event: core.Event, entities: list[core.Entity]) -> bool:
        """Store an event and its touch edges.

        Returns:
            True if the event was new. Touch edges are added either way,
            so re-ingesting with extra entities extends the event.
        """
        created = self._store.add_event(event)
        for entity in entities:
            self._store.add_touch(event.id, entity)
        return created

    def ingest_many(self, records: list[tuple[core.Event, list[core.Entity]]]) -> int:
        """Ingest (event, entities) pairs. Returns the number of new events."""
        return sum(1 for event, entities in records if self.ingest(event, entities))

    # -- pipeline stages -------------------------------------------------------

    def link(self, entities: list[core.Entity] | None = None) -> chain.ChainResult:
        """Link precedence chains. Defaults to entities of unmerged events."""
        if entities is None:
            entities = chain.entities_to_link(self._store)
        return chain.build_chains(self._store, entities)

    def merge(self) -> batch.BatchResult:
        """Merge every unprocessed event into the forest."""
        return self._coordinator.run(self._store, self._oracle)

    def compute_metrics(
        self,
        event_ids: list[str] | None = None,
        *,
        recompute: bool = False,
    ) -> metrics.MetricsResult:
        """Persist snapshots for processed events that lack them."""
        return self._metrics_engine.run(
            self._store, self._oracle, event_ids, recompute=recompute
        )

    def refresh(self) -> RefreshResult:
        """Incrementally bring the derived graph up to date.

        Links the chains of entities touched by unmerged events, merges
        those events, then computes metrics for newly processed events.
        """
        chains = self.link()
        merges = self.merge()
        snapshots = self.compute_metrics()
        return RefreshResult(chains=chains, merges=merges, metrics=snapshots)

    def reset(self) -> None:
        """Delete all derived state in one transaction.

        Precedence links, forest edges, processed flags and metrics are
        removed; events and touch edges are kept.
        """
        self._store.reset_derived()
        logger.info("Reset derived state for project '%s'", self.name)

    def rebuild(self) -> RefreshResult:
        """Reset, then recompute every chain, merge and metric from scratch."""
        self.reset()
        chains = chain.build_chains(self._store)
        merges = self.merge()
        snapshots = self.compute_metrics()
        return RefreshResult(chains=chains, merges=merges, metrics=snapshots)

    def check(self) -> None:
        """Verify forest and chain invariants.

        Raises:
            StructuralViolationError: On the first violation found.
        """
        forest.check_forest(self._store)
        for entity in self._store.list_entities():
            chain.check_chain(self._store, entity)

    # -- features --------------------------------------------------------------

    def score(self, event: core.Event, entities: list[core.Entity]) -> core.FeatureRecord:
        """Real-time features for an event that may not be merged yet.

        Fails fast with FeaturesUnavailableError when the store is down.
        """
        return features.extract_realtime(self._store, event, entities, self._oracle)

    def training_features(
        self,
        event_ids: list[str] | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        cutoff: datetime | None = None,
    ) -> pa.Table:
        """Backward features for historical events as an Arrow table.

        Args:
            event_ids: Events to extract. Defaults to every stored event
                in [start, end].
            start: Inclusive lower timestamp bound when event_ids is None.
            end: Inclusive upper timestamp bound when event_ids is None.
            cutoff: Point-in-time bound. Defaults to each event's own
                timestamp.

        Returns:
            PyArrow Table with types.FEATURE_SCHEMA, one row per event.
        """
        if event_ids is None:
            event_ids = [e.id for e in self._events_in_range(start, end)]

        records = []
        for event_id in event_ids:
            record, _ = retry.retry_call(
                lambda event_id=event_id: self._training_record(event_id, cutoff),
                max_retries=self._feature_settings.read_retries,
                backoff_seconds=self._feature_settings.backoff_seconds,
                description=f"training read for event '{event_id}'",
            )
            records.append(record)
        return features.to_table(records)

    def metrics_table(self) -> pa.Table:
        """Persisted component snapshots as an Arrow table."""
        rows = []
        for event in self._store.list_events():
            snapshot = self._store.get_metrics(event.id)
            if snapshot is None:
                continue
            rows.append(
                {
                    "event_id": event.id,
                    "timestamp": _naive_utc(event.timestamp),
                    "component_size": snapshot.size,
                    "component_diameter": snapshot.diameter,
                    "component_velocity": snapshot.velocity,
                }
            )
        return pa.Table.from_pylist(rows, schema=types.METRICS_SCHEMA)

    def _training_record(self, event_id: str, cutoff: datetime | None) -> core.FeatureRecord:
        if cutoff is None:
            event = self._store.get_event(event_id)
            if event is None:
                raise errors.UnknownEventError(event_id)
            cutoff = event.timestamp
        return features.extract_training(self._store, event_id, cutoff, self._oracle)

    def _events_in_range(
        self, start: datetime | None, end: datetime | None
    ) -> list[core.Event]:
        if start is not None and end is not None:
            return self._store.events_between(start, end)
        return [
            e
            for e in self._store.list_events()
            if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
        ]


def _resolve_store_path(
    graph_store: store.BaseGraphStore, config_path: Path | None
) -> store.BaseGraphStore:
    """Anchor a relative SQLite path at the directory holding skein.yaml."""
    if not isinstance(graph_store, store.SqliteGraphStore) or config_path is None:
        return graph_store
    path = Path(graph_store.path)
    if path.is_absolute():
        return graph_store
    return graph_store.model_copy(update={"path": str(config_path.parent / path)})


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def connect(
    env: str | None = None,
    config_path: str | Path = "skein.yaml",
) -> SkeinProject:
    """Connect to a Skein project.

    Loads skein.yaml, resolves the target environment, and returns a
    project handle with an initialized graph store.

    Args:
        env: Environment name (uses default_env if None).
        config_path: Path to skein.yaml.

    Returns:
        SkeinProject instance.
    """
    skein_settings = settings.load_skein_settings(path=config_path, env=env)
    return SkeinProject(skein_settings)
