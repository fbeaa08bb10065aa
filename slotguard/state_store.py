from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from slotguard.models import serialize_datetime, utc_now


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    user_id INTEGER NOT NULL,
    status_id INTEGER,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id);

CREATE TABLE IF NOT EXISTS availability_projections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    task_id INTEGER NOT NULL UNIQUE REFERENCES tasks(id) ON DELETE CASCADE,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projections_user_range
    ON availability_projections(user_id, start_date, end_date);

CREATE TABLE IF NOT EXISTS availability_locks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE,
    task_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
    is_processing INTEGER NOT NULL DEFAULT 1,
    locked_at TEXT NOT NULL,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_locks_locked_at ON availability_locks(locked_at);
CREATE INDEX IF NOT EXISTS idx_locks_task ON availability_locks(task_id);

CREATE TABLE IF NOT EXISTS reconciliation_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL,
    lock_id INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    available_at TEXT NOT NULL,
    reserved_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_available
    ON reconciliation_jobs(status, available_at);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    subject TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class StateStore:
    """Owns the SQLite file shared by the task, projection, lock and queue tables.

    Every component opens its connections through :meth:`connection`, so the
    schema, foreign key enforcement and the clock are configured in one place.
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock or utc_now
        self._lock = threading.RLock()
        self._init_schema()

    def now(self) -> datetime:
        return self.clock()

    def now_text(self) -> str:
        return serialize_datetime(self.clock())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
            finally:
                conn.close()

    @contextmanager
    def connection(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and rolls back on error.

        Passing an open connection joins its transaction instead of opening a
        new one; the outer owner decides when to commit.
        """
        if conn is not None:
            yield conn
            return
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def record_audit_event(
        self,
        *,
        subject: str,
        subject_id: str | int,
        action: str,
        details: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self.connection(conn) as db:
            db.execute(
                """
                INSERT INTO audit_events(created_at, subject, subject_id, action, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (self.now_text(), subject, str(subject_id), action, json.dumps(details, ensure_ascii=False)),
            )

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self.connection() as conn:
            if action is None:
                rows = conn.execute(
                    """
                    SELECT id, created_at, subject, subject_id, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, created_at, subject, subject_id, action, details_json
                    FROM audit_events
                    WHERE action = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (str(action), max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (str(key), str(value), self.now_text()),
            )

    def get_meta(self, key: str) -> str | None:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT value
                FROM app_meta
                WHERE key = ?
                """,
                (str(key),),
            ).fetchone()
        if row is None:
            return None
        return str(row["value"])
