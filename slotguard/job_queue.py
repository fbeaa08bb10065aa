from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta

from slotguard.models import ReconciliationJob, serialize_datetime
from slotguard.state_store import StateStore

_JOB_COLUMNS = "id, task_id, lock_id, attempts, status, available_at, reserved_at, last_error, created_at"


class ReconciliationQueue:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self.wakeup = threading.Event()

    def enqueue(self, task_id: int, lock_id: int | None, conn: sqlite3.Connection | None = None) -> int:
        now_text = self.state_store.now_text()
        with self.state_store.connection(conn) as db:
            cursor = db.execute(
                """
                INSERT INTO reconciliation_jobs(task_id, lock_id, attempts, status, available_at, created_at, updated_at)
                VALUES (?, ?, 0, 'pending', ?, ?, ?)
                """,
                (int(task_id), lock_id, now_text, now_text, now_text),
            )
            job_id = int(cursor.lastrowid)
        self.wakeup.set()
        return job_id

    def claim_next(self) -> ReconciliationJob | None:
        now_text = self.state_store.now_text()
        with self.state_store.connection() as conn:
            while True:
                row = conn.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM reconciliation_jobs
                    WHERE status = 'pending' AND available_at <= ?
                    ORDER BY available_at, id
                    LIMIT 1
                    """,
                    (now_text,),
                ).fetchone()
                if row is None:
                    return None
                # Another consumer may have claimed the row between the read and the write.
                cursor = conn.execute(
                    """
                    UPDATE reconciliation_jobs
                    SET status = 'running', reserved_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (now_text, now_text, int(row["id"])),
                )
                if cursor.rowcount == 1:
                    job = ReconciliationJob.from_row(row)
                    job.status = "running"
                    job.reserved_at = self.state_store.now()
                    return job

    def complete(self, job_id: int) -> None:
        with self.state_store.connection() as conn:
            conn.execute("DELETE FROM reconciliation_jobs WHERE id = ?", (int(job_id),))

    def retry(self, job_id: int, error: str, delay: timedelta) -> None:
        now = self.state_store.now()
        with self.state_store.connection() as conn:
            conn.execute(
                """
                UPDATE reconciliation_jobs
                SET status = 'pending', attempts = attempts + 1, available_at = ?,
                    reserved_at = NULL, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (serialize_datetime(now + delay), error, serialize_datetime(now), int(job_id)),
            )

    def fail(self, job_id: int, error: str) -> None:
        with self.state_store.connection() as conn:
            conn.execute(
                """
                UPDATE reconciliation_jobs
                SET status = 'failed', attempts = attempts + 1, reserved_at = NULL,
                    last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (error, self.state_store.now_text(), int(job_id)),
            )

    def requeue_stalled(self, stalled_after: timedelta) -> int:
        cutoff = serialize_datetime(self.state_store.now() - stalled_after)
        with self.state_store.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE reconciliation_jobs
                SET status = 'pending', reserved_at = NULL, updated_at = ?
                WHERE status = 'running' AND reserved_at < ?
                """,
                (self.state_store.now_text(), cutoff),
            )
            requeued = int(cursor.rowcount)
        if requeued:
            self.wakeup.set()
        return requeued

    def get(self, job_id: int) -> ReconciliationJob | None:
        with self.state_store.connection() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM reconciliation_jobs WHERE id = ?",
                (int(job_id),),
            ).fetchone()
        return ReconciliationJob.from_row(row) if row else None

    def list_jobs(self, status: str | None = None, limit: int = 100) -> list[ReconciliationJob]:
        with self.state_store.connection() as conn:
            if status is None:
                rows = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM reconciliation_jobs ORDER BY id DESC LIMIT ?",
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM reconciliation_jobs WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (str(status), max(1, limit)),
                ).fetchall()
        return [ReconciliationJob.from_row(row) for row in rows]

    def failed_jobs(self, limit: int = 100) -> list[ReconciliationJob]:
        return self.list_jobs(status="failed", limit=limit)

    def pending_count(self) -> int:
        with self.state_store.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM reconciliation_jobs WHERE status = 'pending'").fetchone()
        return int(row["total"])
