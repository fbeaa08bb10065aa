from __future__ import annotations

import logging
import traceback
from datetime import timedelta
from typing import Callable

from slotguard.config_manager import ConfigManager
from slotguard.errors import ReconciliationError
from slotguard.job_queue import ReconciliationQueue
from slotguard.lock_manager import LockManager
from slotguard.models import ReconciliationConfig, ReconciliationJob, ReconciliationOutcome
from slotguard.projection_store import ProjectionStore
from slotguard.state_store import StateStore
from slotguard.tasks import TaskRepository

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    def __init__(
        self,
        state_store: StateStore,
        task_repository: TaskRepository,
        projection_store: ProjectionStore,
        lock_manager: LockManager,
        queue: ReconciliationQueue,
        config: ReconciliationConfig | None = None,
        on_permanent_failure: Callable[[ReconciliationError], None] | None = None,
        config_manager: ConfigManager | None = None,
    ) -> None:
        self.state_store = state_store
        self.task_repository = task_repository
        self.projection_store = projection_store
        self.lock_manager = lock_manager
        self.queue = queue
        self.config_manager = config_manager
        self._config = config or ReconciliationConfig()
        self.on_permanent_failure = on_permanent_failure

    @property
    def config(self) -> ReconciliationConfig:
        if self.config_manager is not None:
            return self.config_manager.load().reconciliation
        return self._config

    def handle(self, task_id: int, lock_id: int | None) -> str:
        # Released after every attempt, whatever the outcome.
        try:
            task = self.task_repository.get(task_id)
            if task is None or task.is_deleted:
                self.projection_store.delete_by_task(task_id)
                return "removed"
            self.projection_store.upsert(task.id, task.user_id, task.start_date, task.end_date)
            return "rebuilt"
        finally:
            if lock_id is not None:
                self.lock_manager.release(lock_id)

    def process_job(self, job: ReconciliationJob) -> ReconciliationOutcome:
        config = self.config
        attempt = job.attempts + 1
        try:
            result = self.handle(job.task_id, job.lock_id)
        except Exception as exc:
            error_text = f"{type(exc).__name__}: {exc}"
            if attempt < config.max_attempts:
                logger.warning(
                    "Reconciliation attempt %d/%d for task %s failed: %s",
                    attempt,
                    config.max_attempts,
                    job.task_id,
                    error_text,
                )
                self.queue.retry(job.id, error_text, timedelta(seconds=config.backoff_seconds))
                self.state_store.record_audit_event(
                    subject="task",
                    subject_id=job.task_id,
                    action="reconciliation_retry",
                    details={"job_id": job.id, "attempt": attempt, "error": error_text},
                )
                return ReconciliationOutcome(
                    job_id=job.id, task_id=job.task_id, status="retrying", attempts=attempt, error=error_text
                )

            self.queue.fail(job.id, error_text)
            failure = ReconciliationError(job.task_id, attempt, error_text)
            logger.error("%s", failure, exc_info=True)
            self.state_store.record_audit_event(
                subject="task",
                subject_id=job.task_id,
                action="reconciliation_failed",
                details={
                    "job_id": job.id,
                    "lock_id": job.lock_id,
                    "attempts": attempt,
                    "error": error_text,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            if self.on_permanent_failure is not None:
                self.on_permanent_failure(failure)
            return ReconciliationOutcome(
                job_id=job.id, task_id=job.task_id, status="failed", attempts=attempt, error=error_text
            )

        self.queue.complete(job.id)
        return ReconciliationOutcome(job_id=job.id, task_id=job.task_id, status=result, attempts=attempt)

    def run_pending(self, limit: int | None = None) -> list[ReconciliationOutcome]:
        outcomes: list[ReconciliationOutcome] = []
        while limit is None or len(outcomes) < limit:
            job = self.queue.claim_next()
            if job is None:
                break
            outcomes.append(self.process_job(job))
        return outcomes
