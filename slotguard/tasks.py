from __future__ import annotations

import sqlite3
from datetime import date
from typing import Any

from slotguard.errors import TaskNotFoundError
from slotguard.models import TaskRecord, parse_date, serialize_date
from slotguard.state_store import StateStore


UPDATABLE_FIELDS = ("title", "description", "user_id", "status_id", "start_date", "end_date")

_TASK_COLUMNS = "id, title, description, user_id, status_id, start_date, end_date, deleted_at, created_at, updated_at"


def _normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key in UPDATABLE_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key in {"start_date", "end_date"}:
            parsed = parse_date(value)
            if parsed is None:
                raise ValueError(f"{key} is required")
            normalized[key] = serialize_date(parsed)
        elif key == "user_id":
            normalized[key] = int(value)
        elif key == "status_id":
            normalized[key] = int(value) if value is not None else None
        else:
            normalized[key] = str(value or "")
    return normalized


class TaskRepository:
    """Task rows as seen by the availability engine.

    Task administration lives elsewhere; this repository only covers what the
    write path and the reconciliation worker need to read and commit.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get(self, task_id: int, conn: sqlite3.Connection | None = None) -> TaskRecord | None:
        with self.state_store.connection(conn) as db:
            row = db.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?",
                (int(task_id),),
            ).fetchone()
        return TaskRecord.from_row(row) if row else None

    def require(self, task_id: int, conn: sqlite3.Connection | None = None) -> TaskRecord:
        task = self.get(task_id, conn=conn)
        if task is None or task.is_deleted:
            raise TaskNotFoundError(task_id)
        return task

    def create(self, fields: dict[str, Any], conn: sqlite3.Connection | None = None) -> TaskRecord:
        values = _normalize_fields(fields)
        for required in ("user_id", "start_date", "end_date"):
            if required not in values:
                raise ValueError(f"{required} is required")
        now_text = self.state_store.now_text()
        with self.state_store.connection(conn) as db:
            cursor = db.execute(
                """
                INSERT INTO tasks(title, description, user_id, status_id, start_date, end_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    values.get("title", ""),
                    values.get("description", ""),
                    values["user_id"],
                    values.get("status_id"),
                    values["start_date"],
                    values["end_date"],
                    now_text,
                    now_text,
                ),
            )
            return self.require(int(cursor.lastrowid), conn=db)

    def update(self, task_id: int, fields: dict[str, Any], conn: sqlite3.Connection | None = None) -> TaskRecord:
        values = _normalize_fields(fields)
        with self.state_store.connection(conn) as db:
            self.require(task_id, conn=db)
            if values:
                assignments = ", ".join(f"{key} = ?" for key in values)
                db.execute(
                    f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",
                    (*values.values(), self.state_store.now_text(), int(task_id)),
                )
            return self.require(task_id, conn=db)

    def delete(self, task_id: int, conn: sqlite3.Connection | None = None) -> bool:
        """Soft-delete a task. Returns False when it was already gone."""
        now_text = self.state_store.now_text()
        with self.state_store.connection(conn) as db:
            cursor = db.execute(
                "UPDATE tasks SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now_text, now_text, int(task_id)),
            )
        return cursor.rowcount > 0

    def destroy(self, task_id: int, conn: sqlite3.Connection | None = None) -> bool:
        # Projection and lock rows referencing the task go with it (ON DELETE CASCADE).
        with self.state_store.connection(conn) as db:
            cursor = db.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))
        return cursor.rowcount > 0

    def list_for_user(self, user_id: int, *, include_deleted: bool = False) -> list[TaskRecord]:
        query = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE user_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY start_date, id"
        with self.state_store.connection() as conn:
            rows = conn.execute(query, (int(user_id),)).fetchall()
        return [TaskRecord.from_row(row) for row in rows]


def dates_changed(task: TaskRecord, start: date | None, end: date | None) -> bool:
    return (start is not None and start != task.start_date) or (end is not None and end != task.end_date)
