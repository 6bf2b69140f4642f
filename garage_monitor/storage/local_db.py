"""
Local SQLite Database

Durable storage for entity state and orchestration checkpoints:
- entities: last committed value per entity key
- instances: one row per orchestration instance
- history: append-only step log per instance, replayed on resume
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..common.logging_setup import get_service_logger

logger = get_service_logger("storage.local_db")

DEFAULT_DB_PATH = Path("data/garage_monitor.db")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalDatabase:
    """
    SQLite database for entity state and workflow history.

    Every public method opens its own short-lived connection, so the
    database can be shared between the API and the orchestration tasks.
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS instances (
                    instance_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    custom_status TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS history (
                    instance_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT,
                    timestamp TEXT NOT NULL,
                    PRIMARY KEY (instance_id, seq)
                )
            """)

            # Signals accepted but not yet applied; survive a crash
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS entity_signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    value TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_instances_status
                ON instances(status)
            """)

            conn.commit()

        logger.info(f"Database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager"""
        # Busy timeout on lock contention
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row

        # WAL mode for concurrent reads
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def get_entity_state(self, kind: str, name: str) -> str | None:
        """Return the committed state of an entity, or None if it was never written"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT state FROM entities WHERE kind = ? AND name = ?",
                (kind, name),
            ).fetchone()
        return row["state"] if row else None

    def set_entity_state(self, kind: str, name: str, state: str) -> int:
        """Upsert entity state, returning the new version number"""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO entities (kind, name, state, version, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(kind, name) DO UPDATE SET
                    state = excluded.state,
                    version = entities.version + 1,
                    updated_at = excluded.updated_at
            """, (kind, name, state, utc_now_iso()))
            version = conn.execute(
                "SELECT version FROM entities WHERE kind = ? AND name = ?",
                (kind, name),
            ).fetchone()["version"]
            conn.commit()
        return version

    def enqueue_signal(self, kind: str, name: str, operation: str, value: Any) -> int:
        """Persist a fire-and-forget entity operation, returning its id"""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO entity_signals (kind, name, operation, value, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (kind, name, operation, json.dumps(value), utc_now_iso()))
            conn.commit()
            return cursor.lastrowid

    def complete_signal(self, signal_id: int, kind: str, name: str, state: str | None) -> None:
        """
        Remove an applied signal and, when state is given, commit it in the
        same transaction so a signal is never applied twice.
        """
        with self._get_connection() as conn:
            if state is not None:
                conn.execute("""
                    INSERT INTO entities (kind, name, state, version, updated_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(kind, name) DO UPDATE SET
                        state = excluded.state,
                        version = entities.version + 1,
                        updated_at = excluded.updated_at
                """, (kind, name, state, utc_now_iso()))
            conn.execute("DELETE FROM entity_signals WHERE id = ?", (signal_id,))
            conn.commit()

    def get_pending_signals(self) -> list[dict]:
        """Get signals that were accepted but never applied, in arrival order"""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM entity_signals ORDER BY id"
            ).fetchall()
        return [
            {
                "id": row["id"],
                "kind": row["kind"],
                "name": row["name"],
                "operation": row["operation"],
                "value": json.loads(row["value"]) if row["value"] else None,
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Orchestration instances
    # ------------------------------------------------------------------

    def insert_instance(
        self,
        instance_id: str,
        name: str,
        status: str,
        input_data: Any,
        created_at: str,
    ) -> None:
        """Insert a new orchestration instance"""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO instances (
                    instance_id, name, status, input, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (instance_id, name, status, json.dumps(input_data), created_at, created_at))
            conn.commit()

    def update_instance(
        self,
        instance_id: str,
        status: str | None = None,
        output: Any = None,
        custom_status: Any = None,
    ) -> None:
        """Update status/output/custom status of an instance; None fields are left unchanged"""
        fields = ["updated_at = ?"]
        params: list[Any] = [utc_now_iso()]
        if status is not None:
            fields.append("status = ?")
            params.append(status)
        if output is not None:
            fields.append("output = ?")
            params.append(json.dumps(output))
        if custom_status is not None:
            fields.append("custom_status = ?")
            params.append(json.dumps(custom_status))
        params.append(instance_id)

        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE instances SET {', '.join(fields)} WHERE instance_id = ?",
                params,
            )
            conn.commit()

    def get_instance(self, instance_id: str) -> dict | None:
        """Get an instance row with JSON columns decoded"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM instances WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
        if row is None:
            return None
        return _decode_instance(row)

    def get_instances_by_status(self, statuses: list[str]) -> list[dict]:
        """Get instances in any of the given statuses, oldest first"""
        placeholders = ", ".join("?" for _ in statuses)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM instances WHERE status IN ({placeholders}) ORDER BY created_at",
                statuses,
            ).fetchall()
        return [_decode_instance(row) for row in rows]

    # ------------------------------------------------------------------
    # History (append-only step log)
    # ------------------------------------------------------------------

    def append_history(
        self,
        instance_id: str,
        seq: int,
        event_type: str,
        payload: Any,
        timestamp: str,
    ) -> None:
        """Append one event to an instance's step log"""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO history (instance_id, seq, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, (instance_id, seq, event_type, json.dumps(payload), timestamp))
            conn.commit()

    def get_history(self, instance_id: str) -> list[dict]:
        """Get the full step log of an instance in sequence order"""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM history WHERE instance_id = ? ORDER BY seq",
                (instance_id,),
            ).fetchall()
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload"]) if row["payload"] else None,
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]


def _decode_instance(row: sqlite3.Row) -> dict:
    data = dict(row)
    for key in ("input", "output", "custom_status"):
        data[key] = json.loads(data[key]) if data[key] else None
    return data
