"""Audit log entries and the retention task that trims them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from backupwatch.clock import parse_timestamp, to_iso, utcnow

if TYPE_CHECKING:
    from backupwatch.clock import Clock
    from backupwatch.store import StateStore

logger = logging.getLogger(__name__)

# -- Actions -------------------------------------------------------------------

OVERDUE_DETECTED = "overdue_detected"
OVERDUE_NOTIFICATION_SENT = "overdue_notification_sent"
OVERDUE_NOTIFICATION_FAILED = "overdue_notification_failed"
OVERDUE_RECOVERED = "overdue_recovered"
TASK_SKIPPED_BUSY = "task_skipped_busy"
TASK_RUN_COMPLETED = "task_run_completed"
AUDIT_LOG_PRUNED = "audit_log_pruned"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record.

    Attributes:
        timestamp: When the event happened (UTC).
        action: One of the module-level action names.
        outcome: Short machine-readable result (``"success"``,
            ``"transient_failure"``, ``"skipped"``, ...).
        job_id: Backup job the event concerns, if any.
        task_name: Scheduled task the event concerns, if any.
        detail: Free-form human-readable detail.
    """

    timestamp: datetime
    action: str
    outcome: str
    job_id: str | None = None
    task_name: str | None = None
    detail: str = ""

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``audit_log`` insert column order."""
        return (
            to_iso(self.timestamp),
            self.action,
            self.job_id,
            self.task_name,
            self.outcome,
            self.detail,
        )

    @classmethod
    def from_row(cls, row: tuple) -> AuditEntry:
        """Deserialize from ``(timestamp, action, job_id, task_name, outcome, detail)``."""
        return cls(
            timestamp=parse_timestamp(row[0]),
            action=row[1],
            job_id=row[2],
            task_name=row[3],
            outcome=row[4],
            detail=row[5] or "",
        )


class AuditRetention:
    """Scheduled task body: delete audit entries older than the retention window."""

    def __init__(
        self,
        store: StateStore,
        retention: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._retention = retention
        self._clock = clock

    async def run(self) -> str:
        now = self._clock()
        cutoff = now - self._retention
        pruned = await self._store.prune_audit(
            cutoff,
            AuditEntry(
                timestamp=now,
                action=AUDIT_LOG_PRUNED,
                outcome="success",
                detail=f"entries before {to_iso(cutoff)}",
            ),
        )
        logger.info("Pruned %d audit entries older than %s", pruned, to_iso(cutoff))
        return f"pruned {pruned} audit entries"
