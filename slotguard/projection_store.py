from __future__ import annotations

import sqlite3
from datetime import date

from slotguard.models import AvailabilityProjection, serialize_date
from slotguard.state_store import StateStore

_PROJECTION_COLUMNS = "id, user_id, task_id, start_date, end_date, created_at, updated_at"


class ProjectionStore:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def upsert(
        self,
        task_id: int,
        user_id: int,
        start: date,
        end: date,
        conn: sqlite3.Connection | None = None,
    ) -> AvailabilityProjection:
        now_text = self.state_store.now_text()
        with self.state_store.connection(conn) as db:
            db.execute("DELETE FROM availability_projections WHERE task_id = ?", (int(task_id),))
            cursor = db.execute(
                """
                INSERT INTO availability_projections(user_id, task_id, start_date, end_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (int(user_id), int(task_id), serialize_date(start), serialize_date(end), now_text, now_text),
            )
            row = db.execute(
                f"SELECT {_PROJECTION_COLUMNS} FROM availability_projections WHERE id = ?",
                (int(cursor.lastrowid),),
            ).fetchone()
        return AvailabilityProjection.from_row(row)

    def delete_by_task(self, task_id: int, conn: sqlite3.Connection | None = None) -> int:
        with self.state_store.connection(conn) as db:
            cursor = db.execute("DELETE FROM availability_projections WHERE task_id = ?", (int(task_id),))
        return int(cursor.rowcount)

    def find_by_task(self, task_id: int) -> AvailabilityProjection | None:
        with self.state_store.connection() as conn:
            row = conn.execute(
                f"SELECT {_PROJECTION_COLUMNS} FROM availability_projections WHERE task_id = ?",
                (int(task_id),),
            ).fetchone()
        return AvailabilityProjection.from_row(row) if row else None

    def find_by_user(self, user_id: int) -> list[AvailabilityProjection]:
        with self.state_store.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PROJECTION_COLUMNS}
                FROM availability_projections
                WHERE user_id = ?
                ORDER BY start_date, task_id
                """,
                (int(user_id),),
            ).fetchall()
        return [AvailabilityProjection.from_row(row) for row in rows]

    def find_overlapping(
        self,
        user_id: int,
        start: date,
        end: date,
        exclude_task_id: int | None = None,
    ) -> AvailabilityProjection | None:
        query = f"""
            SELECT {_PROJECTION_COLUMNS}
            FROM availability_projections
            WHERE user_id = ? AND start_date <= ? AND end_date >= ?
        """
        params: list[object] = [int(user_id), serialize_date(end), serialize_date(start)]
        if exclude_task_id is not None:
            query += " AND task_id != ?"
            params.append(int(exclude_task_id))
        query += " LIMIT 1"
        with self.state_store.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return AvailabilityProjection.from_row(row) if row else None
