from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from slotguard.models import AvailabilityCheck


RETRY_LATER_MESSAGE = "The system is processing a previous request. Please try again in a moment."


class SlotguardError(Exception):
    """Base class for errors raised by the availability engine."""


class LockBusyError(SlotguardError):
    def __init__(self, user_id: int, message: str = RETRY_LATER_MESSAGE) -> None:
        super().__init__(message)
        self.user_id = user_id


class LockTimeoutError(LockBusyError):
    def __init__(self, user_id: int, attempts: int) -> None:
        super().__init__(user_id)
        self.attempts = attempts


class OverlapConflictError(SlotguardError):
    def __init__(self, check: "AvailabilityCheck") -> None:
        super().__init__(check.message)
        self.check = check

    @property
    def conflicting_task(self) -> dict | None:
        return self.check.conflicting_task


class TaskNotFoundError(SlotguardError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ReconciliationError(SlotguardError):
    def __init__(self, task_id: int, attempts: int, reason: str) -> None:
        super().__init__(f"Reconciliation for task {task_id} failed after {attempts} attempt(s): {reason}")
        self.task_id = task_id
        self.attempts = attempts
        self.reason = reason
