"""BackupJob and ScheduleConfig data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime, timedelta

# Statuses reported by the agent that mean the backup completed.
SUCCESS_STATUSES = ("Success", "Warning")


def make_job_id(server_id: str, backup_name: str) -> str:
    return f"{server_id}:{backup_name}"


@dataclass(frozen=True)
class ScheduleConfig:
    """Effective schedule policy for one job.

    Attributes:
        enabled: Overdue checking on/off for this job.
        expected_interval: Explicit cadence, or None to infer it from history.
        tolerance: Grace period added on top of the interval.
        channels: Channel names to notify, or None for every registered channel.
        allowed_weekdays: Weekdays (Monday=0) the backup is expected to run on,
            or None for every day.
    """

    enabled: bool
    expected_interval: timedelta | None
    tolerance: timedelta
    channels: tuple[str, ...] | None = None
    allowed_weekdays: frozenset[int] | None = None


@dataclass(frozen=True)
class BackupJob:
    """A (server, backup name) pair with the history the detector needs.

    Attributes:
        server_id: Agent/server identifier.
        backup_name: Backup job name on that server.
        server_name: Display name (alias when set).
        last_seen_at: Timestamp of the most recent successful run.
        last_run_at: Timestamp of the most recent run of any status.
        last_run_status: Status of the most recent run.
        successful_runs: Most-recent-first successful run timestamps (bounded).
        schedule: Effective schedule policy.
    """

    server_id: str
    backup_name: str
    schedule: ScheduleConfig
    server_name: str = ""
    last_seen_at: datetime | None = None
    last_run_at: datetime | None = None
    last_run_status: str | None = None
    successful_runs: tuple[datetime, ...] = field(default_factory=tuple)

    @property
    def job_id(self) -> str:
        return make_job_id(self.server_id, self.backup_name)

    @property
    def display_name(self) -> str:
        return self.server_name or self.server_id
