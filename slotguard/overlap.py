from __future__ import annotations

from datetime import date, datetime

from slotguard.models import AvailabilityCheck, AvailabilityProjection, parse_date
from slotguard.projection_store import ProjectionStore
from slotguard.tasks import TaskRepository

AVAILABLE_MESSAGE = "User is available during this period."


def intervals_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    """Closed-interval test: a booking ending the day another starts overlaps it."""
    return start_a <= end_b and end_a >= start_b


def _format_day(value: date) -> str:
    return value.strftime("%b %d, %Y")


def _coerce_range(start: str | date | datetime, end: str | date | datetime) -> tuple[date, date]:
    start_date = parse_date(start)
    end_date = parse_date(end)
    if start_date is None or end_date is None:
        raise ValueError("start and end dates are required")
    if start_date > end_date:
        raise ValueError(f"start date {start_date} is after end date {end_date}")
    return start_date, end_date


class OverlapDetector:
    def __init__(self, projection_store: ProjectionStore, task_repository: TaskRepository) -> None:
        self.projection_store = projection_store
        self.task_repository = task_repository

    def find_overlapping(
        self,
        user_id: int,
        start: str | date | datetime,
        end: str | date | datetime,
        exclude_task_id: int | None = None,
    ) -> AvailabilityProjection | None:
        start_date, end_date = _coerce_range(start, end)
        return self.projection_store.find_overlapping(user_id, start_date, end_date, exclude_task_id)

    def has_overlapping(
        self,
        user_id: int,
        start: str | date | datetime,
        end: str | date | datetime,
        exclude_task_id: int | None = None,
    ) -> bool:
        return self.find_overlapping(user_id, start, end, exclude_task_id) is not None

    def validate_availability(
        self,
        user_id: int,
        start: str | date | datetime,
        end: str | date | datetime,
        exclude_task_id: int | None = None,
    ) -> AvailabilityCheck:
        conflict = self.find_overlapping(user_id, start, end, exclude_task_id)
        if conflict is None:
            return AvailabilityCheck(available=True, message=AVAILABLE_MESSAGE)

        task = self.task_repository.get(conflict.task_id)
        title = task.title if task else f"Task #{conflict.task_id}"
        message = (
            "User is unavailable during this period. They have an overlapping task: "
            f'"{title}" ({_format_day(conflict.start_date)} - {_format_day(conflict.end_date)})'
        )
        return AvailabilityCheck(
            available=False,
            message=message,
            conflicting_task={
                "id": conflict.task_id,
                "title": title,
                "start_date": conflict.start_date.isoformat(),
                "end_date": conflict.end_date.isoformat(),
            },
        )
