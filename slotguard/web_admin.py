from __future__ import annotations

import os
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from slotguard.context import AppContext
from slotguard.errors import LockBusyError, OverlapConflictError, TaskNotFoundError


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AvailabilityValidateRequest(BaseModel):
    user_id: int
    start_date: date
    end_date: date
    exclude_task_id: int | None = None


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("SLOTGUARD_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("SLOTGUARD_STATE_PATH") or None
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Slotguard Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.stop()

    @app.exception_handler(LockBusyError)
    async def _lock_busy(_request: Request, exc: LockBusyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "user_id": exc.user_id})

    @app.exception_handler(OverlapConflictError)
    async def _overlap(_request: Request, exc: OverlapConflictError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), **exc.check.to_dict()})

    @app.exception_handler(TaskNotFoundError)
    async def _task_missing(_request: Request, exc: TaskNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/availability/validate")
    def validate_availability(request: AvailabilityValidateRequest) -> dict[str, Any]:
        try:
            check = app.state.context.orchestrator.validate_availability(
                request.user_id,
                request.start_date,
                request.end_date,
                request.exclude_task_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return check.to_dict()

    @app.get("/api/users/{user_id}/availability")
    def user_availability(user_id: int) -> dict[str, Any]:
        rows = app.state.context.projection_store.find_by_user(user_id)
        return {"user_id": user_id, "availability": [row.to_dict() for row in rows]}

    @app.get("/api/locks")
    def list_locks() -> dict[str, Any]:
        return {"locks": [lock.to_dict() for lock in app.state.context.lock_manager.list_locks()]}

    @app.post("/api/locks/sweep")
    def sweep_locks() -> dict[str, int]:
        orchestrator = app.state.context.orchestrator
        return {
            "stale_locks_cleared": orchestrator.sweep_stale(),
            "old_locks_deleted": orchestrator.sweep_old(),
        }

    @app.delete("/api/locks/{lock_id}")
    def release_lock(lock_id: int) -> dict[str, Any]:
        released = app.state.context.orchestrator.release_lock(lock_id)
        return {"lock_id": lock_id, "released": released}

    @app.get("/api/jobs")
    def list_jobs(status: str | None = None, limit: int = 100) -> dict[str, Any]:
        jobs = app.state.context.queue.list_jobs(status=status, limit=limit)
        return {"jobs": [job.to_dict() for job in jobs], "pending": app.state.context.queue.pending_count()}

    @app.post("/api/jobs/run")
    def run_jobs(limit: int | None = None) -> dict[str, Any]:
        outcomes = app.state.context.worker.run_pending(limit=limit)
        return {"outcomes": [outcome.to_dict() for outcome in outcomes]}

    @app.post("/api/tasks/{task_id}/reconcile")
    def reconcile_task(task_id: int) -> dict[str, Any]:
        job_id = app.state.context.orchestrator.request_reconcile(task_id)
        return {"task_id": task_id, "job_id": job_id}

    @app.get("/api/maintenance")
    def last_maintenance() -> dict[str, Any]:
        return {"last_run": app.state.context.maintenance.last_run()}

    @app.post("/api/maintenance/run")
    def run_maintenance() -> dict[str, Any]:
        return app.state.context.maintenance.run_once(trigger="manual")

    @app.get("/api/audit")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app
