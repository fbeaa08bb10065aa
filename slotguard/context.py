from __future__ import annotations

import time
from datetime import datetime
from typing import Callable

from slotguard.config_manager import ConfigManager
from slotguard.job_queue import ReconciliationQueue
from slotguard.lock_manager import LockManager
from slotguard.orchestrator import WriteOrchestrator
from slotguard.overlap import OverlapDetector
from slotguard.projection_store import ProjectionStore
from slotguard.reconciler import ReconciliationWorker
from slotguard.scheduler import MaintenanceScheduler, ReconciliationRunner
from slotguard.state_store import StateStore
from slotguard.tasks import TaskRepository


class AppContext:
    def __init__(
        self,
        config_path: str,
        state_path: str | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path or config.database.path, clock=clock)
        self.task_repository = TaskRepository(self.state_store)
        self.projection_store = ProjectionStore(self.state_store)
        self.lock_manager = LockManager(
            self.state_store,
            config.locks,
            sleep=sleep or time.sleep,
            config_manager=self.config_manager,
        )
        self.queue = ReconciliationQueue(self.state_store)
        self.detector = OverlapDetector(self.projection_store, self.task_repository)
        self.worker = ReconciliationWorker(
            self.state_store,
            self.task_repository,
            self.projection_store,
            self.lock_manager,
            self.queue,
            config.reconciliation,
            config_manager=self.config_manager,
        )
        self.orchestrator = WriteOrchestrator(
            self.state_store,
            self.task_repository,
            self.projection_store,
            self.lock_manager,
            self.detector,
            self.queue,
        )
        self.runner = ReconciliationRunner(self.worker, self.config_manager)
        self.maintenance = MaintenanceScheduler(self.lock_manager, self.queue, self.state_store, self.config_manager)

    def start(self) -> None:
        self.runner.start()
        self.maintenance.start()

    def stop(self) -> None:
        self.maintenance.stop()
        self.runner.stop()
