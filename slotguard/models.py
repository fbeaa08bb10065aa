from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    # Fixed precision keeps stored timestamps comparable as plain strings.
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_date(value: str | date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) > 10:
        parsed = parse_iso_datetime(text)
        return parsed.date() if parsed else None
    return date.fromisoformat(text)


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass
class DatabaseConfig:
    path: str = "data/slotguard.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DatabaseConfig":
        data = data or {}
        return cls(path=str(data.get("path", "data/slotguard.db")).strip() or "data/slotguard.db")


@dataclass
class LockConfig:
    wait_attempts: int = 3
    wait_interval_seconds: float = 1.0
    stale_after_seconds: int = 300
    retain_days: int = 7
    sweep_interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LockConfig":
        data = data or {}
        return cls(
            wait_attempts=max(1, int(data.get("wait_attempts", 3))),
            wait_interval_seconds=max(0.0, float(data.get("wait_interval_seconds", 1.0))),
            stale_after_seconds=max(1, int(data.get("stale_after_seconds", 300))),
            retain_days=max(1, int(data.get("retain_days", 7))),
            sweep_interval_seconds=max(10, int(data.get("sweep_interval_seconds", 300))),
        )


@dataclass
class ReconciliationConfig:
    max_attempts: int = 3
    backoff_seconds: float = 3.0
    poll_interval_seconds: float = 1.0
    workers: int = 1
    stalled_after_seconds: int = 600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReconciliationConfig":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            backoff_seconds=max(0.0, float(data.get("backoff_seconds", 3.0))),
            poll_interval_seconds=max(0.1, float(data.get("poll_interval_seconds", 1.0))),
            workers=max(1, int(data.get("workers", 1))),
            stalled_after_seconds=max(30, int(data.get("stalled_after_seconds", 600))),
        )


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            database=DatabaseConfig.from_dict(data.get("database")),
            locks=LockConfig.from_dict(data.get("locks")),
            reconciliation=ReconciliationConfig.from_dict(data.get("reconciliation")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class TaskRecord:
    id: int
    user_id: int
    start_date: date
    end_date: date
    title: str = ""
    description: str = ""
    status_id: int | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Any) -> "TaskRecord":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            start_date=parse_date(row["start_date"]),
            end_date=parse_date(row["end_date"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            status_id=int(row["status_id"]) if row["status_id"] is not None else None,
            deleted_at=parse_iso_datetime(row["deleted_at"]),
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = serialize_date(self.start_date)
        payload["end_date"] = serialize_date(self.end_date)
        payload["deleted_at"] = serialize_datetime(self.deleted_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class AvailabilityProjection:
    id: int
    user_id: int
    task_id: int
    start_date: date
    end_date: date
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "AvailabilityProjection":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            task_id=int(row["task_id"]),
            start_date=parse_date(row["start_date"]),
            end_date=parse_date(row["end_date"]),
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "start_date": serialize_date(self.start_date),
            "end_date": serialize_date(self.end_date),
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class AvailabilityLock:
    id: int
    user_id: int
    locked_at: datetime
    task_id: int | None = None
    is_processing: bool = True
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "AvailabilityLock":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            locked_at=parse_iso_datetime(row["locked_at"]),
            task_id=int(row["task_id"]) if row["task_id"] is not None else None,
            is_processing=bool(row["is_processing"]),
            completed_at=parse_iso_datetime(row["completed_at"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "is_processing": self.is_processing,
            "locked_at": serialize_datetime(self.locked_at),
            "completed_at": serialize_datetime(self.completed_at),
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class ReconciliationJob:
    id: int
    task_id: int
    lock_id: int | None = None
    attempts: int = 0
    status: str = "pending"
    available_at: datetime | None = None
    reserved_at: datetime | None = None
    last_error: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "ReconciliationJob":
        return cls(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            lock_id=int(row["lock_id"]) if row["lock_id"] is not None else None,
            attempts=int(row["attempts"]),
            status=str(row["status"]),
            available_at=parse_iso_datetime(row["available_at"]),
            reserved_at=parse_iso_datetime(row["reserved_at"]),
            last_error=str(row["last_error"] or ""),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "lock_id": self.lock_id,
            "attempts": self.attempts,
            "status": self.status,
            "available_at": serialize_datetime(self.available_at),
            "reserved_at": serialize_datetime(self.reserved_at),
            "last_error": self.last_error,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class AvailabilityCheck:
    available: bool
    message: str
    conflicting_task: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"available": self.available, "message": self.message}
        if self.conflicting_task is not None:
            payload["conflicting_task"] = dict(self.conflicting_task)
        return payload


@dataclass
class ReconciliationOutcome:
    job_id: int
    task_id: int
    status: str
    attempts: int
    error: str = ""
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "task_id": self.task_id,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "run_at": serialize_datetime(self.run_at),
        }
