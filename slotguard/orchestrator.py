from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from slotguard.errors import OverlapConflictError, TaskNotFoundError
from slotguard.job_queue import ReconciliationQueue
from slotguard.lock_manager import LockManager
from slotguard.models import AvailabilityCheck, AvailabilityLock, TaskRecord, parse_date
from slotguard.overlap import OverlapDetector
from slotguard.projection_store import ProjectionStore
from slotguard.state_store import StateStore
from slotguard.tasks import TaskRepository, dates_changed

logger = logging.getLogger(__name__)


class WriteOrchestrator:
    """Sequences task writes against the lock, the overlap check and the queue.

    Create and reschedule follow the same path: lock the target user, check
    for overlaps, commit the task together with its reconciliation job, and
    release the lock straight away if anything before the commit fails.
    The reconciliation worker releases it otherwise.
    """

    def __init__(
        self,
        state_store: StateStore,
        task_repository: TaskRepository,
        projection_store: ProjectionStore,
        lock_manager: LockManager,
        detector: OverlapDetector,
        queue: ReconciliationQueue,
    ) -> None:
        self.state_store = state_store
        self.task_repository = task_repository
        self.projection_store = projection_store
        self.lock_manager = lock_manager
        self.detector = detector
        self.queue = queue

    def validate_availability(
        self,
        user_id: int,
        start: str | date | datetime,
        end: str | date | datetime,
        exclude_task_id: int | None = None,
    ) -> AvailabilityCheck:
        return self.detector.validate_availability(user_id, start, end, exclude_task_id)

    def acquire_for_write(self, user_id: int) -> AvailabilityLock:
        return self.lock_manager.acquire_for_write(user_id)

    def release_lock(self, lock_id: int) -> bool:
        return self.lock_manager.release(lock_id)

    def sweep_stale(self, stale_after: timedelta | None = None) -> int:
        return self.lock_manager.sweep_stale(stale_after)

    def sweep_old(self, retain_for: timedelta | None = None) -> int:
        return self.lock_manager.sweep_old(retain_for)

    def create_task(self, fields: dict[str, Any]) -> TaskRecord:
        user_id = int(fields["user_id"])
        start = parse_date(fields.get("start_date"))
        end = parse_date(fields.get("end_date"))

        lock = self.lock_manager.acquire_for_write(user_id)
        try:
            self._ensure_available(user_id, start, end)
            with self.state_store.connection() as conn:
                task = self.task_repository.create(fields, conn=conn)
                self.lock_manager.attach_task(lock.id, task.id, conn=conn)
                self.queue.enqueue(task.id, lock.id, conn=conn)
        except Exception:
            self.lock_manager.release(lock.id)
            raise
        logger.info("Created task %s for user %s; reconciliation queued", task.id, user_id)
        return task

    def update_task(self, task_id: int, fields: dict[str, Any]) -> TaskRecord:
        task = self.task_repository.require(task_id)
        user_id = int(fields.get("user_id", task.user_id))
        start = parse_date(fields.get("start_date")) or task.start_date
        end = parse_date(fields.get("end_date")) or task.end_date

        user_changed = user_id != task.user_id
        if not user_changed and not dates_changed(task, start, end):
            return self.task_repository.update(task_id, fields)

        # A lock still held for this task from an earlier write would otherwise be orphaned.
        self.lock_manager.release_for_task(task_id)
        lock = self.lock_manager.acquire_for_write(user_id)
        try:
            self._ensure_available(user_id, start, end, exclude_task_id=task_id)
            with self.state_store.connection() as conn:
                updated = self.task_repository.update(task_id, fields, conn=conn)
                self.lock_manager.attach_task(lock.id, task_id, conn=conn)
                self.queue.enqueue(task_id, lock.id, conn=conn)
        except Exception:
            self.lock_manager.release(lock.id)
            raise
        if user_changed:
            logger.info("Task %s reassigned from user %s to user %s", task_id, task.user_id, user_id)
        return updated

    def request_reconcile(self, task_id: int) -> int:
        """Queue a fresh rebuild for a task whose projection may have drifted."""
        task = self.task_repository.require(task_id)
        lock = self.lock_manager.acquire_for_write(task.user_id, task_id=task_id)
        try:
            job_id = self.queue.enqueue(task_id, lock.id)
        except Exception:
            self.lock_manager.release(lock.id)
            raise
        self.state_store.record_audit_event(
            subject="task",
            subject_id=task_id,
            action="reconciliation_requested",
            details={"job_id": job_id, "lock_id": lock.id, "user_id": task.user_id},
        )
        return job_id

    def delete_task(self, task_id: int) -> None:
        with self.state_store.connection() as conn:
            task = self.task_repository.get(task_id, conn=conn)
            if task is None or task.is_deleted:
                raise TaskNotFoundError(task_id)
            self.projection_store.delete_by_task(task_id, conn=conn)
            self.task_repository.delete(task_id, conn=conn)

    def _ensure_available(
        self,
        user_id: int,
        start: date | None,
        end: date | None,
        exclude_task_id: int | None = None,
    ) -> None:
        check = self.detector.validate_availability(user_id, start, end, exclude_task_id)
        if not check.available:
            raise OverlapConflictError(check)
