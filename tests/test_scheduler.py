import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from slotguard.context import AppContext


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class MaintenanceSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = _Clock(datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc))
        self.context = AppContext(
            config_path=str(Path(self.temp_dir.name) / "config.yaml"),
            state_path=str(Path(self.temp_dir.name) / "state.db"),
            clock=self.clock,
            sleep=lambda _seconds: None,
        )

    def tearDown(self) -> None:
        self.context.stop()
        self.temp_dir.cleanup()

    def test_run_once_sweeps_locks_and_requeues_stalled_jobs(self) -> None:
        locks = self.context.lock_manager
        task = self.context.task_repository.create(
            {"title": "Audit", "user_id": 7, "start_date": "2025-01-10", "end_date": "2025-01-15"}
        )
        locks.try_acquire(7)
        job_id = self.context.queue.enqueue(task.id, None)
        self.assertIsNotNone(self.context.queue.claim_next())

        self.clock.advance(minutes=11)
        fresh = locks.try_acquire(8)
        summary = self.context.maintenance.run_once(trigger="scheduled")

        self.assertEqual(summary["stale_locks_cleared"], 1)
        self.assertEqual(summary["old_locks_deleted"], 0)
        self.assertEqual(summary["jobs_requeued"], 1)
        self.assertEqual([lock.id for lock in locks.list_locks()], [fresh.id])
        self.assertEqual(self.context.queue.get(job_id).status, "pending")
        self.assertEqual(self.context.maintenance.last_run()["trigger"], "scheduled")

    def test_old_sweep_catches_rows_past_retention(self) -> None:
        self.context.lock_manager.try_acquire(7)
        self.clock.advance(days=8)
        summary = self.context.maintenance.run_once()
        # The stale sweep runs first and already removes the row.
        self.assertEqual(summary["stale_locks_cleared"] + summary["old_locks_deleted"], 1)
        self.assertEqual(self.context.lock_manager.list_locks(), [])


class ReconciliationRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.context = AppContext(
            config_path=str(Path(self.temp_dir.name) / "config.yaml"),
            state_path=str(Path(self.temp_dir.name) / "state.db"),
            sleep=lambda _seconds: None,
        )
        self.context.config_manager.update({"reconciliation": {"poll_interval_seconds": 0.1}})

    def tearDown(self) -> None:
        self.context.runner.stop()
        self.temp_dir.cleanup()

    def test_background_consumer_drains_queue(self) -> None:
        task = self.context.orchestrator.create_task(
            {"title": "Audit", "user_id": 7, "start_date": "2025-01-10", "end_date": "2025-01-15"}
        )
        self.context.runner.start()
        self.assertTrue(self.context.runner.running)

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if self.context.projection_store.find_by_task(task.id) is not None and not self.context.lock_manager.list_locks():
                break
            time.sleep(0.05)

        self.assertIsNotNone(self.context.projection_store.find_by_task(task.id))
        self.assertEqual(self.context.lock_manager.list_locks(), [])

        self.context.runner.stop()
        self.assertFalse(self.context.runner.running)


if __name__ == "__main__":
    unittest.main()
