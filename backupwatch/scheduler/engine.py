"""APScheduler lifecycle, per-task serialization and manual triggers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backupwatch import audit
from backupwatch.audit import AuditEntry
from backupwatch.clock import to_iso, utcnow
from backupwatch.db import StoreUnavailableError
from backupwatch.scheduler.models import (
    REASON_BUSY,
    REASON_DISABLED,
    REASON_SHUTTING_DOWN,
    REASON_UNKNOWN_TASK,
    STATUS_FAILED,
    STATUS_SUCCESS,
    TaskRunRecord,
    TriggerResult,
)

if TYPE_CHECKING:
    from datetime import datetime

    from backupwatch.clock import Clock
    from backupwatch.scheduler.models import TaskDefinition
    from backupwatch.store import StateStore

logger = logging.getLogger(__name__)

HEALTH_OK = "ok"
HEALTH_DEGRADED = "degraded"


class TaskScheduler:
    """Runs registered tasks on their interval, never two runs of one task at once.

    The APScheduler job callback only *launches* a run as an asyncio task, so
    overlap detection is ours: a tick that arrives while the previous run of
    the same task is still going is skipped and audited, not queued.

    Args:
        store: Persists task-run records and audit entries.
        clock: Time source for run timestamps and startup reconciliation.
        store_failure_threshold: Consecutive store failures before
            :meth:`health` reports ``"degraded"``.
        drain_timeout: How long :meth:`stop` waits for in-flight runs.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock = utcnow,
        store_failure_threshold: int = 3,
        drain_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._clock = clock
        self._store_failure_threshold = store_failure_threshold
        self._drain_timeout = drain_timeout
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._tasks: dict[str, TaskDefinition] = {}
        self._records: dict[str, TaskRunRecord] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._store_failures = 0
        self._started_monotonic: float | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> int:
        if self._started_monotonic is None:
            return 0
        return int(time.monotonic() - self._started_monotonic)

    def is_busy(self, name: str) -> bool:
        return name in self._inflight

    # -- Registration --------------------------------------------------------------

    def register(self, task: TaskDefinition) -> None:
        """Add a task. Only allowed before :meth:`start`."""
        if self._running:
            msg = "Cannot register tasks while the scheduler is running"
            raise RuntimeError(msg)
        if task.name in self._tasks:
            msg = f"Task '{task.name}' is already registered"
            raise ValueError(msg)
        if task.interval.total_seconds() <= 0:
            msg = f"Task '{task.name}' needs a positive interval"
            raise ValueError(msg)
        self._tasks[task.name] = task

    def list_tasks(self) -> list[str]:
        return list(self._tasks)

    # -- Lifecycle -------------------------------------------------------------------

    async def start(self) -> None:
        """Load last-run records, schedule enabled tasks and start ticking."""
        try:
            self._records = await self._store.load_task_runs()
        except StoreUnavailableError:
            logger.exception("Could not load task-run records; scheduling from scratch")
            self._store_failures += 1
            self._records = {}

        now = self._clock()
        for task in self._tasks.values():
            if not task.enabled:
                logger.info("Task '%s' is disabled; not scheduling", task.name)
                continue
            first_run = self._first_run_time(task, now)
            self._scheduler.add_job(
                self._on_tick,
                trigger=IntervalTrigger(seconds=int(task.interval.total_seconds())),
                id=task.name,
                name=task.name,
                args=[task.name],
                next_run_time=first_run,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None,
                replace_existing=True,
            )
        self._scheduler.start()
        self._started_monotonic = time.monotonic()
        self._running = True
        logger.info(
            "Scheduler started with %d task(s): %s",
            len(self._tasks),
            ", ".join(self._tasks) or "none",
        )

    async def stop(self) -> None:
        """Stop ticking immediately, then let in-flight runs finish."""
        if not self._running:
            return
        self._running = False
        self._scheduler.shutdown(wait=False)
        if not await self.join(self._drain_timeout):
            for name, task in list(self._inflight.items()):
                logger.warning("Cancelling task '%s' still running after drain timeout", name)
                task.cancel()
            for skip in list(self._background):
                skip.cancel()
        logger.info("Scheduler stopped")

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs and pending skip audits.

        Returns False if some are still running.
        """
        pending = [*self._inflight.values(), *self._background]
        if not pending:
            return True
        logger.info("Waiting for %d running task(s) to finish", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    def _first_run_time(self, task: TaskDefinition, now: datetime) -> datetime:
        """Defer the first run if the persisted record shows a recent run."""
        record = self._records.get(task.name)
        if record is None or record.last_run_at is None:
            return now
        due = record.last_run_at + task.interval
        if due > now:
            logger.info(
                "Task '%s' last ran at %s; first run deferred to %s",
                task.name,
                to_iso(record.last_run_at),
                to_iso(due),
            )
            return due
        return now

    # -- Triggers --------------------------------------------------------------------

    async def _on_tick(self, name: str) -> None:
        """APScheduler callback. Returns as soon as the run is launched."""
        if name in self._inflight:
            logger.warning("Skipping scheduled run of '%s': previous run still in progress", name)
            await self._record_skip(name, "schedule")
            return
        self._launch(name, "schedule")

    async def trigger(self, name: str) -> TriggerResult:
        """Start *name* now unless it is unknown, disabled or already running."""
        task = self._tasks.get(name)
        if task is None:
            return TriggerResult(accepted=False, reason=REASON_UNKNOWN_TASK)
        if not task.enabled:
            return TriggerResult(accepted=False, reason=REASON_DISABLED)
        if not self._running:
            return TriggerResult(accepted=False, reason=REASON_SHUTTING_DOWN)
        if name in self._inflight:
            logger.info("Manual trigger of '%s' rejected: already running", name)
            # The audit write may wait on the store lock; the caller must not.
            skip = asyncio.create_task(self._record_skip(name, "manual"))
            self._background.add(skip)
            skip.add_done_callback(self._background.discard)
            return TriggerResult(accepted=False, reason=REASON_BUSY)
        self._launch(name, "manual")
        logger.info("Manual trigger accepted for '%s'", name)
        return TriggerResult(accepted=True)

    def _launch(self, name: str, source: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, source), name=f"task:{name}")
        self._inflight[name] = task
        return task

    # -- Execution -------------------------------------------------------------------

    async def _run(self, name: str, source: str) -> None:
        """Execute one run; every failure ends here as a failed run record."""
        definition = self._tasks[name]
        started_at = self._clock()
        started = time.monotonic()
        store_failed = False
        status = STATUS_SUCCESS
        try:
            logger.info("Running task '%s' (%s)", name, source)
            try:
                detail = await definition.run() or ""
            except StoreUnavailableError as exc:
                store_failed = True
                status, detail = STATUS_FAILED, f"store unavailable: {exc}"
                logger.error("Task '%s' aborted, store unavailable: %s", name, exc)
            except Exception as exc:
                status, detail = STATUS_FAILED, f"{type(exc).__name__}: {exc}"
                logger.exception("Task '%s' failed", name)

            record = TaskRunRecord(
                task_name=name,
                last_run_at=started_at,
                last_run_status=status,
                last_run_duration_ms=int((time.monotonic() - started) * 1000),
            )
            self._records[name] = record
            try:
                await self._store.record_task_run(
                    record,
                    [
                        AuditEntry(
                            timestamp=self._clock(),
                            action=audit.TASK_RUN_COMPLETED,
                            outcome=status,
                            task_name=name,
                            detail=f"{source}: {detail}" if detail else source,
                        )
                    ],
                )
            except StoreUnavailableError:
                store_failed = True
                logger.exception("Could not persist run record for task '%s'", name)

            self._note_store_health(store_failed)
            logger.info(
                "Task '%s' finished: %s in %d ms", name, status, record.last_run_duration_ms
            )
        finally:
            self._inflight.pop(name, None)

    async def _record_skip(self, name: str, source: str) -> None:
        try:
            await self._store.append_audit([
                AuditEntry(
                    timestamp=self._clock(),
                    action=audit.TASK_SKIPPED_BUSY,
                    outcome="skipped",
                    task_name=name,
                    detail=f"{source} run skipped: previous run still in progress",
                )
            ])
        except StoreUnavailableError:
            logger.exception("Could not audit skipped run of '%s'", name)

    def _note_store_health(self, failed: bool) -> None:
        if not failed:
            if self._store_failures:
                logger.info("Store reachable again after %d failure(s)", self._store_failures)
            self._store_failures = 0
            return
        self._store_failures += 1
        if self._store_failures == self._store_failure_threshold:
            logger.error(
                "Store unavailable for %d consecutive run(s); reporting degraded health",
                self._store_failures,
            )

    # -- Introspection ---------------------------------------------------------------

    def health(self) -> str:
        """``"degraded"`` once store failures persist across runs, else ``"ok"``."""
        if self._store_failures >= self._store_failure_threshold:
            return HEALTH_DEGRADED
        return HEALTH_OK

    def status(self) -> list[dict]:
        """Per-task status for the control API."""
        tasks = []
        for name, definition in self._tasks.items():
            record = self._records.get(name)
            job = self._scheduler.get_job(name) if self._running else None
            tasks.append({
                "name": name,
                "description": definition.description,
                "enabled": definition.enabled,
                "running": name in self._inflight,
                "intervalSeconds": int(definition.interval.total_seconds()),
                "lastRunAt": to_iso(record.last_run_at) if record else None,
                "lastRunStatus": record.last_run_status if record else None,
                "lastRunDurationMs": record.last_run_duration_ms if record else None,
                "nextRunAt": to_iso(job.next_run_time) if job and job.next_run_time else None,
            })
        return tasks
