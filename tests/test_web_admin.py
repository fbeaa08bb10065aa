import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

from slotguard.context import AppContext
from slotguard.web_admin import create_app


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = _Clock(datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc))
        self.context = AppContext(
            config_path=str(Path(self.temp_dir.name) / "config.yaml"),
            state_path=str(Path(self.temp_dir.name) / "state.db"),
            clock=self.clock,
            sleep=lambda _seconds: None,
        )
        self.client = TestClient(create_app(self.context))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _book(self, title: str, user_id: int, start: str, end: str) -> int:
        task = self.context.orchestrator.create_task(
            {"title": title, "user_id": user_id, "start_date": start, "end_date": end}
        )
        self.context.worker.run_pending()
        return task.id

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_roundtrip_merges_sections(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"locks": {"wait_attempts": 5}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["locks"]["wait_attempts"], 5)
        self.assertEqual(config["locks"]["stale_after_seconds"], 300)
        self.assertEqual(self.client.get("/api/config").json()["reconciliation"]["max_attempts"], 3)

    def test_config_update_applies_to_running_components(self) -> None:
        resp = self.client.put(
            "/api/config",
            json={
                "payload": {
                    "locks": {"stale_after_seconds": 60, "wait_attempts": 5},
                    "reconciliation": {"max_attempts": 1},
                }
            },
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.context.lock_manager.config.wait_attempts, 5)
        self.assertEqual(self.context.worker.config.max_attempts, 1)

        lock = self.context.lock_manager.try_acquire(7)
        self.clock.advance(seconds=120)
        swept = self.client.post("/api/locks/sweep").json()

        self.assertEqual(swept["stale_locks_cleared"], 1)
        self.assertIsNone(self.context.lock_manager.get_lock(lock.id))

    def test_config_update_rejects_unknown_section(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"caldav": {"url": "x"}}})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.put("/api/config", json={"payload": {"locks": 5}})
        self.assertEqual(resp.status_code, 400)

    def test_validate_availability_reports_conflict(self) -> None:
        audit_id = self._book("Audit", 7, "2025-01-10", "2025-01-15")
        resp = self.client.post(
            "/api/availability/validate",
            json={"user_id": 7, "start_date": "2025-01-12", "end_date": "2025-01-20"},
        )
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["available"])
        self.assertEqual(data["conflicting_task"]["id"], audit_id)

        resp = self.client.post(
            "/api/availability/validate",
            json={"user_id": 7, "start_date": "2025-01-12", "end_date": "2025-01-20", "exclude_task_id": audit_id},
        )
        self.assertTrue(resp.json()["available"])

    def test_validate_availability_rejects_inverted_range(self) -> None:
        resp = self.client.post(
            "/api/availability/validate",
            json={"user_id": 7, "start_date": "2025-01-20", "end_date": "2025-01-12"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_user_availability_lists_projection(self) -> None:
        task_id = self._book("Audit", 7, "2025-01-10", "2025-01-15")
        resp = self.client.get("/api/users/7/availability")
        self.assertEqual(resp.status_code, 200)
        rows = resp.json()["availability"]
        self.assertEqual([row["task_id"] for row in rows], [task_id])
        self.assertEqual(rows[0]["start_date"], "2025-01-10")

    def test_lock_listing_and_release(self) -> None:
        lock = self.context.lock_manager.try_acquire(7)
        listed = self.client.get("/api/locks").json()["locks"]
        self.assertEqual([item["id"] for item in listed], [lock.id])

        first = self.client.delete(f"/api/locks/{lock.id}").json()
        second = self.client.delete(f"/api/locks/{lock.id}").json()
        self.assertTrue(first["released"])
        self.assertFalse(second["released"])

    def test_sweep_endpoint_returns_counts(self) -> None:
        resp = self.client.post("/api/locks/sweep")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"stale_locks_cleared": 0, "old_locks_deleted": 0})

    def test_reconcile_endpoint_maps_busy_and_missing(self) -> None:
        task_id = self._book("Audit", 7, "2025-01-10", "2025-01-15")
        self.context.lock_manager.try_acquire(7)

        busy = self.client.post(f"/api/tasks/{task_id}/reconcile")
        self.assertEqual(busy.status_code, 409)
        self.assertEqual(busy.json()["user_id"], 7)

        missing = self.client.post("/api/tasks/999/reconcile")
        self.assertEqual(missing.status_code, 404)

    def test_jobs_run_and_audit(self) -> None:
        task = self.context.orchestrator.create_task(
            {"title": "Audit", "user_id": 7, "start_date": "2025-01-10", "end_date": "2025-01-15"}
        )
        jobs = self.client.get("/api/jobs").json()
        self.assertEqual(jobs["pending"], 1)
        self.assertEqual(jobs["jobs"][0]["task_id"], task.id)

        run = self.client.post("/api/jobs/run").json()
        self.assertEqual([item["status"] for item in run["outcomes"]], ["rebuilt"])
        self.assertEqual(self.client.get("/api/jobs").json()["pending"], 0)

        self.context.lock_manager.try_acquire(7)
        self.assertEqual(self.client.post(f"/api/tasks/{task.id}/reconcile").status_code, 409)
        events = self.client.get("/api/audit", params={"action": "lock_timeout"}).json()["events"]
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["details"]["user_id"], 7)

    def test_maintenance_run_records_summary(self) -> None:
        self.assertIsNone(self.client.get("/api/maintenance").json()["last_run"])
        summary = self.client.post("/api/maintenance/run").json()
        self.assertEqual(summary["trigger"], "manual")
        self.assertEqual(summary["stale_locks_cleared"], 0)
        self.assertEqual(self.client.get("/api/maintenance").json()["last_run"]["trigger"], "manual")


if __name__ == "__main__":
    unittest.main()
