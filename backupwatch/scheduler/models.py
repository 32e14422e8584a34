"""Task definitions, run records and trigger results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from backupwatch.clock import parse_timestamp, to_iso

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime, timedelta

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

REASON_BUSY = "busy"
REASON_UNKNOWN_TASK = "unknown_task"
REASON_DISABLED = "disabled"
REASON_SHUTTING_DOWN = "shutting_down"


@dataclass(frozen=True)
class TaskDefinition:
    """A named recurring task.

    Attributes:
        name: Unique task name (used in the control API path).
        interval: Time between scheduled runs.
        run: Coroutine function doing the work. Its optional return value
            is a short summary stored in the completion audit entry.
        enabled: Disabled tasks are listed but never scheduled or triggered.
        description: Human-readable description.
    """

    name: str
    interval: timedelta
    run: Callable[[], Awaitable[str | None]]
    enabled: bool = True
    description: str = ""


@dataclass(frozen=True)
class TaskRunRecord:
    """Outcome of a task's most recent run, persisted across restarts."""

    task_name: str
    last_run_at: datetime | None
    last_run_status: str | None
    last_run_duration_ms: int | None

    def to_row(self) -> tuple:
        return (
            self.task_name,
            to_iso(self.last_run_at),
            self.last_run_status,
            self.last_run_duration_ms,
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskRunRecord:
        return cls(
            task_name=row[0],
            last_run_at=parse_timestamp(row[1]),
            last_run_status=row[2],
            last_run_duration_ms=row[3],
        )


@dataclass(frozen=True)
class TriggerResult:
    """Answer to a manual trigger request. ``reason`` is set when rejected."""

    accepted: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"accepted": self.accepted}
        if self.reason is not None:
            data["reason"] = self.reason
        return data
