from __future__ import annotations

import logging
import sqlite3
import time
from datetime import timedelta
from typing import Callable

from slotguard.config_manager import ConfigManager
from slotguard.errors import LockTimeoutError
from slotguard.models import AvailabilityLock, LockConfig, serialize_datetime
from slotguard.state_store import StateStore

logger = logging.getLogger(__name__)

_LOCK_COLUMNS = "id, user_id, task_id, is_processing, locked_at, completed_at, created_at"


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


class LockManager:
    def __init__(
        self,
        state_store: StateStore,
        config: LockConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        config_manager: ConfigManager | None = None,
    ) -> None:
        self.state_store = state_store
        self.config_manager = config_manager
        self._config = config or LockConfig()
        self._sleep = sleep

    @property
    def config(self) -> LockConfig:
        if self.config_manager is not None:
            return self.config_manager.load().locks
        return self._config

    def try_acquire(self, user_id: int, task_id: int | None = None) -> AvailabilityLock | None:
        now = self.state_store.now()
        now_text = serialize_datetime(now)
        try:
            with self.state_store.connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO availability_locks(user_id, task_id, is_processing, locked_at, created_at)
                    VALUES (?, ?, 1, ?, ?)
                    """,
                    (int(user_id), task_id, now_text, now_text),
                )
        except sqlite3.IntegrityError as exc:
            if not _is_unique_violation(exc):
                raise
            return None
        return AvailabilityLock(
            id=int(cursor.lastrowid),
            user_id=int(user_id),
            task_id=task_id,
            locked_at=now,
            created_at=now,
        )

    def is_locked(self, user_id: int) -> bool:
        with self.state_store.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM availability_locks WHERE user_id = ?",
                (int(user_id),),
            ).fetchone()
        return row is not None

    def get_active_lock(self, user_id: int) -> AvailabilityLock | None:
        with self.state_store.connection() as conn:
            row = conn.execute(
                f"SELECT {_LOCK_COLUMNS} FROM availability_locks WHERE user_id = ?",
                (int(user_id),),
            ).fetchone()
        return AvailabilityLock.from_row(row) if row else None

    def get_lock(self, lock_id: int) -> AvailabilityLock | None:
        with self.state_store.connection() as conn:
            row = conn.execute(
                f"SELECT {_LOCK_COLUMNS} FROM availability_locks WHERE id = ?",
                (int(lock_id),),
            ).fetchone()
        return AvailabilityLock.from_row(row) if row else None

    def list_locks(self) -> list[AvailabilityLock]:
        with self.state_store.connection() as conn:
            rows = conn.execute(f"SELECT {_LOCK_COLUMNS} FROM availability_locks ORDER BY locked_at, id").fetchall()
        return [AvailabilityLock.from_row(row) for row in rows]

    def wait_acquire(
        self,
        user_id: int,
        max_attempts: int,
        interval: float,
        task_id: int | None = None,
    ) -> AvailabilityLock | None:
        """Poll until the user is free and the insert wins, or give up.

        Returns ``None`` once ``max_attempts`` polls have failed. The state
        lives in the shared database, so this spins rather than waiting on an
        in-process condition.
        """
        attempts = max(1, int(max_attempts))
        for attempt in range(1, attempts + 1):
            if not self.is_locked(user_id):
                lock = self.try_acquire(user_id, task_id=task_id)
                if lock is not None:
                    return lock
            if attempt < attempts:
                self._sleep(interval)
        return None

    def acquire_for_write(self, user_id: int, task_id: int | None = None) -> AvailabilityLock:
        config = self.config
        lock = self.wait_acquire(
            user_id,
            config.wait_attempts,
            config.wait_interval_seconds,
            task_id=task_id,
        )
        if lock is not None:
            return lock
        logger.warning(
            "Lock timeout for user availability update (user_id=%s, attempts=%s)",
            user_id,
            config.wait_attempts,
        )
        self.state_store.record_audit_event(
            subject="lock",
            subject_id=user_id,
            action="lock_timeout",
            details={"user_id": int(user_id), "task_id": task_id, "attempts": config.wait_attempts},
        )
        raise LockTimeoutError(user_id, config.wait_attempts)

    def attach_task(self, lock_id: int, task_id: int, conn: sqlite3.Connection | None = None) -> bool:
        with self.state_store.connection(conn) as db:
            cursor = db.execute(
                "UPDATE availability_locks SET task_id = ? WHERE id = ?",
                (int(task_id), int(lock_id)),
            )
        return cursor.rowcount > 0

    def release(self, lock_id: int) -> bool:
        """Delete the lock row. Releasing an already released lock is a no-op."""
        with self.state_store.connection() as conn:
            cursor = conn.execute("DELETE FROM availability_locks WHERE id = ?", (int(lock_id),))
        return cursor.rowcount > 0

    def release_for_task(self, task_id: int) -> int:
        with self.state_store.connection() as conn:
            cursor = conn.execute("DELETE FROM availability_locks WHERE task_id = ?", (int(task_id),))
        return int(cursor.rowcount)

    def sweep_stale(self, stale_after: timedelta | None = None) -> int:
        if stale_after is None:
            stale_after = timedelta(seconds=self.config.stale_after_seconds)
        cutoff = serialize_datetime(self.state_store.now() - stale_after)
        with self.state_store.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM availability_locks WHERE locked_at < ?",
                (cutoff,),
            )
        cleared = int(cursor.rowcount)
        if cleared:
            logger.info("Cleared %d stale availability lock(s) locked before %s", cleared, cutoff)
            self.state_store.record_audit_event(
                subject="lock",
                subject_id="sweep",
                action="stale_locks_cleared",
                details={"count": cleared, "cutoff": cutoff},
            )
        return cleared

    def sweep_old(self, retain_for: timedelta | None = None) -> int:
        if retain_for is None:
            retain_for = timedelta(days=self.config.retain_days)
        cutoff = serialize_datetime(self.state_store.now() - retain_for)
        with self.state_store.connection() as conn:
            cursor = conn.execute("DELETE FROM availability_locks WHERE created_at < ?", (cutoff,))
        deleted = int(cursor.rowcount)
        if deleted:
            logger.info("Deleted %d old availability lock record(s) created before %s", deleted, cutoff)
            self.state_store.record_audit_event(
                subject="lock",
                subject_id="sweep",
                action="old_locks_deleted",
                details={"count": deleted, "cutoff": cutoff},
            )
        return deleted
