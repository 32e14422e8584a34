"""Per-job notification state machine.

A job's :class:`NotificationRecord` is either *clear* (no episode) or *open*
(an overdue episode is in progress). The functions here are pure: they take
the current record and the detector's verdict and say what should happen
next. Persisting the result is the caller's job.

::

    Clear ──overdue──▶ Open ──new successful run──▶ Clear
                       │  ▲
                       └──┘ still overdue: nothing, or retry delivery,
                            or re-notify once the escalation interval passed
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from backupwatch.clock import parse_timestamp, to_iso

if TYPE_CHECKING:
    from datetime import datetime, timedelta

    from backupwatch.history.models import BackupJob
    from backupwatch.overdue.detector import OverdueState


class Transition(enum.Enum):
    NONE = "none"
    OPEN = "open"
    STILL_OPEN = "still_open"
    RETRY = "retry"
    ESCALATE = "escalate"
    RECOVER = "recover"

    @property
    def dispatches(self) -> bool:
        """Whether this transition owes an overdue alert."""
        return self in (Transition.OPEN, Transition.RETRY, Transition.ESCALATE)


@dataclass(frozen=True)
class NotificationRecord:
    """Persisted notification state for one job.

    Attributes:
        job_id: ``"<server_id>:<backup_name>"``.
        episode_started_at: When the current overdue episode was opened
            (None when clear).
        notified_at: When the last overdue alert for this episode was
            delivered (None until one succeeds).
        last_seen_at: The successful run the episode was opened against; a
            newer successful run ends the episode.
        attempts: Failed delivery attempts in this episode.
        last_error: Most recent delivery failure, if any.
    """

    job_id: str
    episode_started_at: datetime | None = None
    notified_at: datetime | None = None
    last_seen_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def is_open(self) -> bool:
        return self.episode_started_at is not None

    def to_row(self) -> tuple:
        """Serialize to ``notification_records`` column order (minus updated_at)."""
        return (
            self.job_id,
            to_iso(self.episode_started_at),
            to_iso(self.notified_at),
            to_iso(self.last_seen_at),
            self.attempts,
            self.last_error,
        )

    @classmethod
    def from_row(cls, row: tuple) -> NotificationRecord:
        return cls(
            job_id=row[0],
            episode_started_at=parse_timestamp(row[1]),
            notified_at=parse_timestamp(row[2]),
            last_seen_at=parse_timestamp(row[3]),
            attempts=int(row[4] or 0),
            last_error=row[5],
        )


def has_new_run(job: BackupJob, record: NotificationRecord) -> bool:
    """True when the job reported a successful run after the episode's anchor."""
    if job.last_seen_at is None:
        return False
    if record.last_seen_at is None:
        return True
    return job.last_seen_at > record.last_seen_at


def decide(
    state: OverdueState,
    record: NotificationRecord | None,
    job: BackupJob,
    now: datetime,
    escalation_interval: timedelta | None = None,
) -> Transition:
    """Choose the transition for one job on this tick."""
    if record is None or not record.is_open:
        return Transition.OPEN if state.is_overdue else Transition.NONE

    if has_new_run(job, record):
        return Transition.RECOVER
    if not state.is_overdue:
        # Disabled or re-configured while open: the episode only ends on a new run.
        return Transition.NONE
    if record.notified_at is None:
        return Transition.RETRY
    if escalation_interval is not None and now - record.notified_at >= escalation_interval:
        return Transition.ESCALATE
    return Transition.STILL_OPEN


def opened(job: BackupJob, now: datetime) -> NotificationRecord:
    """A fresh open record for an episode that starts at *now*."""
    return NotificationRecord(
        job_id=job.job_id,
        episode_started_at=now,
        last_seen_at=job.last_seen_at,
    )


def delivered(record: NotificationRecord, now: datetime) -> NotificationRecord:
    """Record a successful overdue alert (first, retried or escalated)."""
    return replace(record, notified_at=now, last_error=None)


def failed(record: NotificationRecord, error: str) -> NotificationRecord:
    """Record a failed delivery; ``notified_at`` is left as it was."""
    return replace(record, attempts=record.attempts + 1, last_error=error)


def cleared(record: NotificationRecord, job: BackupJob) -> NotificationRecord:
    """End the episode; the row stays, anchored to the job's latest run."""
    return NotificationRecord(job_id=record.job_id, last_seen_at=job.last_seen_at)
