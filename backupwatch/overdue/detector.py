"""Overdue detection as a pure function of job history, policy and the clock.

The expected interval comes from, in order:

1. the job's explicit ``expected_interval`` (``"configured"``),
2. the median gap between its recent successful runs (``"inferred"``),
3. the global default interval (``"default"``).

``expected_at = last_seen_at + interval (+ days to the next allowed weekday) +
tolerance`` and a job is overdue once ``now`` is strictly past that instant.
A job without any successful run is never overdue; it is flagged with
``insufficient_history`` instead. A disabled job is never overdue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from backupwatch.clock import truncate
from backupwatch.overdue.intervals import median_gap

if TYPE_CHECKING:
    from backupwatch.history.models import BackupJob, ScheduleConfig

INTERVAL_CONFIGURED = "configured"
INTERVAL_INFERRED = "inferred"
INTERVAL_DEFAULT = "default"


@dataclass(frozen=True)
class OverdueState:
    """Result of one evaluation. Recomputed every tick, never stored."""

    job_id: str
    is_overdue: bool
    expected_at: datetime | None
    last_seen_at: datetime | None
    interval: timedelta | None = None
    interval_source: str | None = None
    insufficient_history: bool = False
    enabled: bool = True

    def overdue_for(self, now: datetime) -> timedelta:
        """How far past ``expected_at`` the job is (zero when not overdue)."""
        if not self.is_overdue or self.expected_at is None:
            return timedelta(0)
        return truncate(now) - self.expected_at


def resolve_interval(
    job: BackupJob,
    config: ScheduleConfig,
    default_interval: timedelta,
) -> tuple[timedelta, str]:
    """Pick the job's expected interval and report where it came from."""
    if config.expected_interval is not None and config.expected_interval.total_seconds() > 0:
        return config.expected_interval, INTERVAL_CONFIGURED
    inferred = median_gap(list(job.successful_runs))
    if inferred is not None and inferred.total_seconds() > 0:
        return inferred, INTERVAL_INFERRED
    return default_interval, INTERVAL_DEFAULT


def next_allowed_day(ts: datetime, allowed_weekdays: frozenset[int] | None) -> datetime:
    """Move *ts* forward in whole days until it lands on an allowed weekday."""
    if not allowed_weekdays:
        return ts
    for _ in range(7):
        if ts.weekday() in allowed_weekdays:
            return ts
        ts += timedelta(days=1)
    return ts


def evaluate(
    job: BackupJob,
    config: ScheduleConfig,
    now: datetime,
    *,
    default_interval: timedelta = timedelta(days=1),
) -> OverdueState:
    """Compute the current :class:`OverdueState` for *job* at *now*."""
    now = truncate(now)
    last_seen = truncate(job.last_seen_at) if job.last_seen_at else None

    if last_seen is None:
        return OverdueState(
            job_id=job.job_id,
            is_overdue=False,
            expected_at=None,
            last_seen_at=None,
            insufficient_history=True,
            enabled=config.enabled,
        )

    interval, source = resolve_interval(job, config, default_interval)
    base = next_allowed_day(last_seen + interval, config.allowed_weekdays)
    expected_at = base + config.tolerance

    return OverdueState(
        job_id=job.job_id,
        is_overdue=config.enabled and now > expected_at,
        expected_at=expected_at,
        last_seen_at=last_seen,
        interval=interval,
        interval_source=source,
        enabled=config.enabled,
    )
