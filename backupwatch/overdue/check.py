"""The recurring task that detects overdue backups and alerts.

One run:

1. reads every job and every notification record (two short read
   transactions),
2. evaluates each job and decides its transition,
3. dispatches whatever alerts are owed, with no transaction open,
4. commits all record changes and their audit entries in one transaction.

If the store is unavailable at step 1 or 4 the run raises
``StoreUnavailableError`` and nothing from it is persisted.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING

from backupwatch import audit
from backupwatch.audit import AuditEntry
from backupwatch.clock import to_iso, truncate, utcnow
from backupwatch.notifications.messages import MessageBuilder
from backupwatch.overdue import tracker
from backupwatch.overdue.detector import evaluate
from backupwatch.overdue.tracker import Transition

if TYPE_CHECKING:
    from datetime import datetime

    from backupwatch.clock import Clock
    from backupwatch.history.models import BackupJob
    from backupwatch.history.store import JobHistoryStore
    from backupwatch.notifications.dispatcher import NotificationDispatcher
    from backupwatch.notifications.models import Notification
    from backupwatch.overdue.detector import OverdueState
    from backupwatch.overdue.tracker import NotificationRecord
    from backupwatch.store import StateStore

logger = logging.getLogger(__name__)

TASK_NAME = "overdue-backup-check"


class OverdueCheck:
    """Task body for the overdue backup check.

    Args:
        history: Read-only job history.
        store: Owner of notification records and the audit log.
        dispatcher: Delivers alerts.
        messages: Renders notification text.
        default_interval: Interval used when none is configured or inferable.
        escalation_interval: Re-notify an open, already-notified episode after
            this long (None disables re-notification).
        notify_on_recovery: Send a recovery notice when a notified episode ends.
        clock: Time source.
    """

    def __init__(
        self,
        history: JobHistoryStore,
        store: StateStore,
        dispatcher: NotificationDispatcher,
        *,
        messages: MessageBuilder | None = None,
        default_interval: timedelta = timedelta(days=1),
        escalation_interval: timedelta | None = None,
        notify_on_recovery: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self._history = history
        self._store = store
        self._dispatcher = dispatcher
        self._messages = messages or MessageBuilder()
        self._default_interval = default_interval
        self._escalation_interval = escalation_interval
        self._notify_on_recovery = notify_on_recovery
        self._clock = clock

    async def run(self) -> str:
        now = truncate(self._clock())
        jobs = await self._history.list_jobs()
        records = await self._store.load_notification_records()

        upserts: list[NotificationRecord] = []
        entries: list[AuditEntry] = []
        counts: Counter[str] = Counter()

        for job in jobs:
            state = evaluate(job, job.schedule, now, default_interval=self._default_interval)
            if state.insufficient_history:
                counts["no_history"] += 1
                logger.debug("Job %s has no successful run yet", job.job_id)
            if state.is_overdue:
                counts["overdue"] += 1

            record = records.get(job.job_id)
            transition = tracker.decide(state, record, job, now, self._escalation_interval)
            if transition is Transition.RETRY and not self._dispatcher.has_channels(
                job.schedule.channels
            ):
                transition = Transition.STILL_OPEN
            counts[transition.value] += 1

            new_record, job_entries = await self._apply(job, state, record, transition, now)
            if new_record is not None and new_record != record:
                upserts.append(new_record)
            entries.extend(job_entries)

        orphans = sorted(set(records) - {job.job_id for job in jobs})
        if orphans:
            logger.info("Removing notification records of %d vanished job(s)", len(orphans))

        await self._store.commit_tick(upserts, orphans, entries)

        summary = (
            f"checked {len(jobs)} job(s): {counts['overdue']} overdue, "
            f"{counts[Transition.OPEN.value]} new, "
            f"{counts[Transition.RECOVER.value]} recovered, "
            f"{counts['no_history']} without history"
        )
        logger.info("Overdue check %s", summary)
        return summary

    # -- Transitions -------------------------------------------------------------

    async def _apply(
        self,
        job: BackupJob,
        state: OverdueState,
        record: NotificationRecord | None,
        transition: Transition,
        now: datetime,
    ) -> tuple[NotificationRecord | None, list[AuditEntry]]:
        if transition is Transition.OPEN:
            opened = tracker.opened(job, now)
            logger.warning(
                "Backup %s is overdue (last seen %s, expected by %s)",
                job.job_id,
                to_iso(state.last_seen_at),
                to_iso(state.expected_at),
            )
            detected = AuditEntry(
                timestamp=now,
                action=audit.OVERDUE_DETECTED,
                outcome="open",
                job_id=job.job_id,
                detail=(
                    f"last seen {to_iso(state.last_seen_at)}, "
                    f"expected by {to_iso(state.expected_at)} ({state.interval_source} interval)"
                ),
            )
            return await self._notify(
                job, opened, self._messages.overdue(job, state, now), now, [detected]
            )

        if transition is Transition.RETRY:
            logger.info(
                "Retrying overdue notification for %s (%d failed attempt(s))",
                job.job_id,
                record.attempts,
            )
            return await self._notify(job, record, self._messages.overdue(job, state, now), now)

        if transition is Transition.ESCALATE:
            logger.info(
                "Re-notifying %s: still overdue since %s",
                job.job_id,
                to_iso(record.episode_started_at),
            )
            return await self._notify(
                job, record, self._messages.escalation(job, state, now), now
            )

        if transition is Transition.RECOVER:
            return await self._recover(job, record, now)

        if transition is Transition.STILL_OPEN:
            logger.debug("Job %s still overdue, already handled", job.job_id)
        return record, []

    async def _notify(
        self,
        job: BackupJob,
        record: NotificationRecord,
        notification: Notification,
        now: datetime,
        entries: list[AuditEntry] | None = None,
    ) -> tuple[NotificationRecord | None, list[AuditEntry]]:
        entries = entries or []
        result = await self._dispatcher.dispatch(notification, job.schedule.channels)
        detail = f"{notification.kind}: {result.summary()}"
        if result.ok:
            entries.append(
                AuditEntry(
                    timestamp=now,
                    action=audit.OVERDUE_NOTIFICATION_SENT,
                    outcome=result.outcome.value,
                    job_id=job.job_id,
                    detail=detail,
                )
            )
            return tracker.delivered(record, now), entries

        logger.error("Overdue notification for %s failed: %s", job.job_id, result.summary())
        entries.append(
            AuditEntry(
                timestamp=now,
                action=audit.OVERDUE_NOTIFICATION_FAILED,
                outcome=result.outcome.value,
                job_id=job.job_id,
                detail=detail,
            )
        )
        return tracker.failed(record, result.summary()), entries

    async def _recover(
        self, job: BackupJob, record: NotificationRecord, now: datetime
    ) -> tuple[NotificationRecord | None, list[AuditEntry]]:
        logger.info(
            "Backup %s recovered (new run at %s)", job.job_id, to_iso(job.last_seen_at)
        )
        entries = [
            AuditEntry(
                timestamp=now,
                action=audit.OVERDUE_RECOVERED,
                outcome="cleared",
                job_id=job.job_id,
                detail=(
                    f"new successful run at {to_iso(job.last_seen_at)}; "
                    f"episode started {to_iso(record.episode_started_at)}"
                ),
            )
        ]
        if (
            self._notify_on_recovery
            and record.notified_at is not None
            and self._dispatcher.has_channels(job.schedule.channels)
        ):
            notification = self._messages.recovered(job, now)
            result = await self._dispatcher.dispatch(notification, job.schedule.channels)
            entries.append(
                AuditEntry(
                    timestamp=now,
                    action=(
                        audit.OVERDUE_NOTIFICATION_SENT
                        if result.ok
                        else audit.OVERDUE_NOTIFICATION_FAILED
                    ),
                    outcome=result.outcome.value,
                    job_id=job.job_id,
                    detail=f"{notification.kind}: {result.summary()}",
                )
            )
        return tracker.cleared(record, job), entries
