from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta
from typing import Any, Optional

from slotguard.config_manager import ConfigManager
from slotguard.job_queue import ReconciliationQueue
from slotguard.lock_manager import LockManager
from slotguard.reconciler import ReconciliationWorker
from slotguard.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_MAINTENANCE_META_KEY = "last_maintenance"


class ReconciliationRunner:
    def __init__(self, worker: ReconciliationWorker, config_manager: ConfigManager) -> None:
        self.worker = worker
        self.config_manager = config_manager
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        count = self.config_manager.load().reconciliation.workers
        self._threads = [
            threading.Thread(target=self._loop, name=f"slotguard-reconciler-{index}", daemon=True)
            for index in range(count)
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.worker.queue.wakeup.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []

    def _loop(self) -> None:
        wakeup = self.worker.queue.wakeup
        while not self._stop_event.is_set():
            try:
                self.worker.run_pending()
            except Exception:
                logger.exception("Reconciliation consumer iteration failed")
            poll_seconds = self.config_manager.load().reconciliation.poll_interval_seconds
            wakeup.wait(timeout=poll_seconds)
            wakeup.clear()


class MaintenanceScheduler:
    def __init__(
        self,
        lock_manager: LockManager,
        queue: ReconciliationQueue,
        state_store: StateStore,
        config_manager: ConfigManager,
    ) -> None:
        self.lock_manager = lock_manager
        self.queue = queue
        self.state_store = state_store
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="slotguard-maintenance", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self, trigger: str = "manual") -> dict[str, Any]:
        config = self.config_manager.load()
        summary = {
            "trigger": trigger,
            "stale_locks_cleared": self.lock_manager.sweep_stale(
                timedelta(seconds=config.locks.stale_after_seconds)
            ),
            "old_locks_deleted": self.lock_manager.sweep_old(timedelta(days=config.locks.retain_days)),
            "jobs_requeued": self.queue.requeue_stalled(
                timedelta(seconds=config.reconciliation.stalled_after_seconds)
            ),
            "run_at": self.state_store.now_text(),
        }
        self.state_store.set_meta(LAST_MAINTENANCE_META_KEY, json.dumps(summary))
        return summary

    def last_run(self) -> dict[str, Any] | None:
        raw = self.state_store.get_meta(LAST_MAINTENANCE_META_KEY)
        return json.loads(raw) if raw else None

    def _run_guarded(self, trigger: str) -> None:
        try:
            self.run_once(trigger=trigger)
        except Exception:
            logger.exception("Lock maintenance run failed (trigger=%s)", trigger)

    def _loop(self) -> None:
        # Clear locks left by a previous crash before serving writes.
        self._run_guarded("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(10, int(config.locks.sweep_interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run_guarded("manual" if manual else "scheduled")
