"""Builds overdue, escalation and recovery notifications from templates.

Templates use ``str.format`` placeholders: ``{server_name}``,
``{backup_name}``, ``{job_id}``, ``{last_backup_date}``, ``{expected_date}``,
``{overdue_for}``, ``{interval}``. Unknown placeholders are left as-is.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from backupwatch.notifications.models import (
    KIND_ESCALATION,
    KIND_OVERDUE,
    KIND_RECOVERED,
    Notification,
)
from backupwatch.overdue.intervals import format_duration

if TYPE_CHECKING:
    from datetime import datetime

    from backupwatch.history.models import BackupJob
    from backupwatch.overdue.detector import OverdueState

DEFAULT_OVERDUE_TITLE = "Overdue backup: {server_name} / {backup_name}"
DEFAULT_OVERDUE_MESSAGE = (
    "The backup {backup_name} on {server_name} is overdue.\n"
    "Last successful backup: {last_backup_date}\n"
    "Expected by: {expected_date} (interval {interval})\n"
    "Overdue for: {overdue_for}"
)
ESCALATION_TITLE = "Still overdue: {server_name} / {backup_name}"
RECOVERED_TITLE = "Backup recovered: {server_name} / {backup_name}"
RECOVERED_MESSAGE = (
    "The backup {backup_name} on {server_name} reported a new successful run "
    "at {last_backup_date} and is no longer overdue."
)


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _fmt(ts: datetime | None) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC") if ts else "never"


def template_values(job: BackupJob, state: OverdueState | None, now: datetime) -> dict[str, str]:
    values = {
        "server_name": job.display_name,
        "backup_name": job.backup_name,
        "job_id": job.job_id,
        "last_backup_date": _fmt(job.last_seen_at),
        "expected_date": "unknown",
        "overdue_for": "0s",
        "interval": "unknown",
    }
    if state is not None:
        values["expected_date"] = _fmt(state.expected_at)
        values["overdue_for"] = format_duration(state.overdue_for(now))
        if state.interval is not None:
            values["interval"] = format_duration(state.interval)
    return values


def render(template: str, values: dict[str, str]) -> str:
    return template.format_map(_Defaulting(values))


class MessageBuilder:
    """Renders notifications; overdue title/message can be overridden.

    Overdue alerts carry no priority or tags of their own, so channels apply
    their configured ones. Escalations and recovery notices override both.
    """

    def __init__(self, overdue_title: str = "", overdue_message: str = "") -> None:
        self._overdue_title = overdue_title or DEFAULT_OVERDUE_TITLE
        self._overdue_message = overdue_message or DEFAULT_OVERDUE_MESSAGE

    def overdue(self, job: BackupJob, state: OverdueState, now: datetime) -> Notification:
        values = template_values(job, state, now)
        return Notification(
            kind=KIND_OVERDUE,
            title=render(self._overdue_title, values),
            message=render(self._overdue_message, values),
            job_id=job.job_id,
        )

    def escalation(self, job: BackupJob, state: OverdueState, now: datetime) -> Notification:
        values = template_values(job, state, now)
        return Notification(
            kind=KIND_ESCALATION,
            title=render(ESCALATION_TITLE, values),
            message=render(self._overdue_message, values),
            job_id=job.job_id,
            priority=5,
            tags=("rotating_light", "backup"),
        )

    def recovered(self, job: BackupJob, now: datetime) -> Notification:
        values = template_values(job, None, now)
        return Notification(
            kind=KIND_RECOVERED,
            title=render(RECOVERED_TITLE, values),
            message=render(RECOVERED_MESSAGE, values),
            job_id=job.job_id,
            priority=3,
            tags=("white_check_mark", "backup"),
        )
