"""SQLite graph store implementation.

Persists the event/entity graph and its derived forest state in a single
SQLite database. Each operation opens its own connection, so one store
instance can be shared freely between worker threads; group commits run
inside ``BEGIN IMMEDIATE`` transactions so concurrent writers serialize
on the database write lock.
"""

from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

import skein.core as core
import skein.errors as errors
import skein.store.base as base

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    ts TEXT NOT NULL,
    ts_key INTEGER NOT NULL,
    interaction_type TEXT NOT NULL,
    amount REAL,
    processed INTEGER NOT NULL DEFAULT 0,
    component_size INTEGER,
    component_diameter INTEGER,
    component_velocity REAL
);

CREATE TABLE IF NOT EXISTS touches (
    event_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_key TEXT NOT NULL,
    PRIMARY KEY (event_id, entity_type, entity_key)
);

CREATE TABLE IF NOT EXISTS precedence (
    src TEXT NOT NULL,
    dst TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_key TEXT NOT NULL,
    PRIMARY KEY (src, dst, entity_type, entity_key)
);

CREATE TABLE IF NOT EXISTS forest (
    head TEXT NOT NULL,
    event_id TEXT NOT NULL,
    PRIMARY KEY (head, event_id)
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts_key, id);
CREATE INDEX IF NOT EXISTS idx_events_processed ON events(processed);
CREATE INDEX IF NOT EXISTS idx_touches_entity ON touches(entity_type, entity_key);
CREATE INDEX IF NOT EXISTS idx_precedence_dst ON precedence(dst);
CREATE INDEX IF NOT EXISTS idx_precedence_entity ON precedence(entity_type, entity_key);
CREATE INDEX IF NOT EXISTS idx_forest_event ON forest(event_id);
"""

_EVENT_COLUMNS = "id, ts, interaction_type, amount"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SqliteGraphStore(base.BaseGraphStore):
    """SQLite-backed graph store.

    Suitable for local development and single-machine deployments.

    Example:
        store = SqliteGraphStore(path=".skein/graph.db")
        store.initialize()
    """

    kind: Literal["sqlite"] = "sqlite"
    path: str
    timeout_seconds: float = 5.0

    @contextlib.contextmanager
    def _session(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and translate SQLite errors."""
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        except sqlite3.Error as exc:
            raise errors.StoreUnavailableError(operation, str(exc)) from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            message = str(exc)
            locked = "locked" in message or "busy" in message
            if isinstance(exc, sqlite3.OperationalError) and locked:
                raise errors.TransientStoreError(
                    context=f"Running store operation '{operation}'",
                    cause=message,
                    fix="Retry the unit of work.",
                ) from exc
            raise errors.StoreUnavailableError(operation, message) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._session("initialize") as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    def teardown(self) -> None:
        """Drop every table."""
        with self._session("teardown") as conn:
            for table in ("forest", "precedence", "touches", "events"):
                conn.execute(f"DROP TABLE IF EXISTS {table}")

    # -- events ------------------------------------------------------------

    def add_event(self, event: core.Event) -> bool:
        with self._session("add_event") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO events (id, ts, ts_key, interaction_type, amount)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp.isoformat(),
                    _ts_key(event.timestamp),
                    event.interaction_type,
                    event.amount,
                ),
            )
            return cursor.rowcount == 1

    def get_event(self, event_id: str) -> core.Event | None:
        with self._session("get_event") as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row is not None else None

    def list_events(self) -> list[core.Event]:
        with self._session("list_events") as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY ts_key, id"
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def events_between(self, start: datetime, end: datetime) -> list[core.Event]:
        with self._session("events_between") as conn:
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE ts_key >= ? AND ts_key <= ?
                ORDER BY ts_key, id
                """,
                (_ts_key(start), _ts_key(end)),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    # -- touch edges -------------------------------------------------------

    def add_touch(self, event_id: str, entity: core.Entity) -> bool:
        with self._session("add_touch") as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO touches (event_id, entity_type, entity_key) VALUES (?, ?, ?)",
                (event_id, entity.type, entity.key),
            )
            return cursor.rowcount == 1

    def entities_of(self, event_id: str) -> list[core.Entity]:
        with self._session("entities_of") as conn:
            rows = conn.execute(
                "SELECT entity_type, entity_key FROM touches WHERE event_id = ? ORDER BY rowid",
                (event_id,),
            ).fetchall()
        return [core.Entity(type=row[0], key=row[1]) for row in rows]

    def events_touching(self, entity: core.Entity) -> list[core.Event]:
        with self._session("events_touching") as conn:
            rows = conn.execute(
                """
                SELECT e.id, e.ts, e.interaction_type, e.amount
                FROM touches t JOIN events e ON e.id = t.event_id
                WHERE t.entity_type = ? AND t.entity_key = ?
                ORDER BY e.ts_key, e.id
                """,
                (entity.type, entity.key),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_entities(self) -> list[core.Entity]:
        with self._session("list_entities") as conn:
            rows = conn.execute(
                "SELECT DISTINCT entity_type, entity_key FROM touches ORDER BY entity_type, entity_key"
            ).fetchall()
        return [core.Entity(type=row[0], key=row[1]) for row in rows]

    # -- precedence edges --------------------------------------------------

    def add_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        with self._session("add_precedence") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO precedence (src, dst, entity_type, entity_key)
                VALUES (?, ?, ?, ?)
                """,
                (src, dst, entity.type, entity.key),
            )
            return cursor.rowcount == 1

    def remove_precedence(self, src: str, dst: str, entity: core.Entity) -> bool:
        with self._session("remove_precedence") as conn:
            cursor = conn.execute(
                """
                DELETE FROM precedence
                WHERE src = ? AND dst = ? AND entity_type = ? AND entity_key = ?
                """,
                (src, dst, entity.type, entity.key),
            )
            return cursor.rowcount == 1

    def chain_edges(self, entity: core.Entity) -> list[tuple[str, str]]:
        with self._session("chain_edges") as conn:
            rows = conn.execute(
                """
                SELECT src, dst FROM precedence
                WHERE entity_type = ? AND entity_key = ?
                ORDER BY src, dst
                """,
                (entity.type, entity.key),
            ).fetchall()
        return [(row[0], row[1]) for row in rows]

    def precedence_predecessors(self, event_id: str) -> list[str]:
        with self._session("precedence_predecessors") as conn:
            rows = conn.execute(
                "SELECT DISTINCT src FROM precedence WHERE dst = ? ORDER BY src", (event_id,)
            ).fetchall()
        return [row[0] for row in rows]

    def precedence_successors(self, event_id: str) -> list[str]:
        with self._session("precedence_successors") as conn:
            rows = conn.execute(
                "SELECT DISTINCT dst FROM precedence WHERE src = ? ORDER BY dst", (event_id,)
            ).fetchall()
        return [row[0] for row in rows]

    def precedence_edges(self) -> list[tuple[str, str]]:
        with self._session("precedence_edges") as conn:
            rows = conn.execute(
                "SELECT DISTINCT src, dst FROM precedence ORDER BY src, dst"
            ).fetchall()
        return [(row[0], row[1]) for row in rows]

    # -- forest ------------------------------------------------------------

    def forest_successor(self, event_id: str) -> str | None:
        with self._session("forest_successor") as conn:
            rows = conn.execute(
                "SELECT event_id FROM forest WHERE head = ?", (event_id,)
            ).fetchall()
        if len(rows) > 1:
            raise errors.BranchingForestError(event_id, [row[0] for row in rows])
        return rows[0][0] if rows else None

    def forest_predecessors(self, event_id: str) -> list[str]:
        with self._session("forest_predecessors") as conn:
            rows = conn.execute(
                "SELECT head FROM forest WHERE event_id = ? ORDER BY rowid", (event_id,)
            ).fetchall()
        return [row[0] for row in rows]

    def forest_edges(self) -> list[tuple[str, str]]:
        with self._session("forest_edges") as conn:
            rows = conn.execute("SELECT head, event_id FROM forest ORDER BY rowid").fetchall()
        return [(row[0], row[1]) for row in rows]

    def is_processed(self, event_id: str) -> bool:
        with self._session("is_processed") as conn:
            row = conn.execute(
                "SELECT processed FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return bool(row[0]) if row is not None else False

    def unprocessed_events(self) -> list[core.Event]:
        with self._session("unprocessed_events") as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE processed = 0 ORDER BY ts_key, id"
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def commit_group(self, merges: list[core.Merge]) -> None:
        with self._session("commit_group") as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                for merge in merges:
                    row = conn.execute(
                        "SELECT processed FROM events WHERE id = ?", (merge.event_id,)
                    ).fetchone()
                    if row is None:
                        raise errors.UnknownEventError(merge.event_id)
                    if row[0]:
                        raise errors.MergeConflictError(merge.event_id)
                    for head in merge.heads:
                        taken = conn.execute(
                            "SELECT 1 FROM forest WHERE head = ? LIMIT 1", (head,)
                        ).fetchone()
                        if taken is not None:
                            raise errors.MergeConflictError(merge.event_id, head)
                        conn.execute(
                            "INSERT INTO forest (head, event_id) VALUES (?, ?)",
                            (head, merge.event_id),
                        )
                    conn.execute(
                        "UPDATE events SET processed = 1 WHERE id = ?", (merge.event_id,)
                    )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # -- metrics -----------------------------------------------------------

    def set_metrics(self, event_id: str, metrics: core.ComponentMetrics) -> None:
        with self._session("set_metrics") as conn:
            conn.execute(
                """
                UPDATE events
                SET component_size = ?, component_diameter = ?, component_velocity = ?
                WHERE id = ?
                """,
                (metrics.size, metrics.diameter, metrics.velocity, event_id),
            )

    def get_metrics(self, event_id: str) -> core.ComponentMetrics | None:
        with self._session("get_metrics") as conn:
            row = conn.execute(
                """
                SELECT component_size, component_diameter, component_velocity
                FROM events WHERE id = ?
                """,
                (event_id,),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return core.ComponentMetrics(size=row[0], diameter=row[1], velocity=float(row[2]))

    # -- reset -------------------------------------------------------------

    def reset_derived(self) -> None:
        with self._session("reset_derived") as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM precedence")
                conn.execute("DELETE FROM forest")
                conn.execute(
                    """
                    UPDATE events
                    SET processed = 0, component_size = NULL,
                        component_diameter = NULL, component_velocity = NULL
                    """
                )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")


def _ts_key(ts: datetime) -> int:
    """Microseconds since the epoch; naive timestamps are read as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(microseconds=1)


def _row_to_event(row: tuple) -> core.Event:
    return core.Event(
        id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        interaction_type=row[2],
        amount=row[3],
    )
