"""Tables owned by the monitor: notification records, task runs, audit log.

Every mutation runs in one ``BEGIN IMMEDIATE`` transaction together with the
audit entries that describe it, so the web process never sees a state change
without its audit trail (or the reverse).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from backupwatch.audit import AuditEntry
from backupwatch.clock import to_iso, utcnow
from backupwatch.db import transaction
from backupwatch.overdue.tracker import NotificationRecord
from backupwatch.scheduler.models import TaskRunRecord

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from pathlib import Path

    import aiosqlite

logger = logging.getLogger(__name__)

_CREATE_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS notification_records (
        job_id TEXT PRIMARY KEY,
        episode_started_at TEXT,
        notified_at TEXT,
        last_seen_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_runs (
        task_name TEXT PRIMARY KEY,
        last_run_at TEXT,
        last_run_status TEXT,
        last_run_duration_ms INTEGER,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        job_id TEXT,
        task_name TEXT,
        outcome TEXT NOT NULL,
        detail TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log (timestamp)",
)

_INSERT_AUDIT = """
INSERT INTO audit_log (timestamp, action, job_id, task_name, outcome, detail)
VALUES (?, ?, ?, ?, ?, ?)
"""


class StateStore:
    """Persists the monitor's own state in the shared SQLite file.

    Construct one per process and pass it to every component; tests point
    it at ``tmp_path / "test.db"``.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._initialised = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialise(self) -> None:
        """Create the owned tables if they do not exist yet."""
        if self._initialised:
            return
        async with transaction(self._db_path, write=True) as db:
            for statement in _CREATE_TABLES:
                await db.execute(statement)
        self._initialised = True

    # -- Notification records ----------------------------------------------------

    async def load_notification_records(self) -> dict[str, NotificationRecord]:
        """Return every notification record keyed by job ID."""
        await self.initialise()
        async with transaction(self._db_path) as db:
            cursor = await db.execute(
                """
                SELECT job_id, episode_started_at, notified_at, last_seen_at,
                       attempts, last_error
                FROM notification_records
                """
            )
            rows = await cursor.fetchall()
        return {row[0]: NotificationRecord.from_row(row) for row in rows}

    async def get_notification_record(self, job_id: str) -> NotificationRecord | None:
        await self.initialise()
        async with transaction(self._db_path) as db:
            cursor = await db.execute(
                """
                SELECT job_id, episode_started_at, notified_at, last_seen_at,
                       attempts, last_error
                FROM notification_records WHERE job_id = ?
                """,
                (job_id,),
            )
            row = await cursor.fetchone()
        return NotificationRecord.from_row(row) if row else None

    async def commit_tick(
        self,
        upserts: Iterable[NotificationRecord] = (),
        deletes: Iterable[str] = (),
        audit: Iterable[AuditEntry] = (),
    ) -> None:
        """Apply one tick's record changes and audit entries atomically."""
        upserts, deletes, audit = list(upserts), list(deletes), list(audit)
        if not (upserts or deletes or audit):
            return
        await self.initialise()
        now = to_iso(utcnow())
        async with transaction(self._db_path, write=True) as db:
            for record in upserts:
                await db.execute(
                    """
                    INSERT INTO notification_records
                        (job_id, episode_started_at, notified_at, last_seen_at,
                         attempts, last_error, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (job_id) DO UPDATE SET
                        episode_started_at = excluded.episode_started_at,
                        notified_at = excluded.notified_at,
                        last_seen_at = excluded.last_seen_at,
                        attempts = excluded.attempts,
                        last_error = excluded.last_error,
                        updated_at = excluded.updated_at
                    """,
                    (*record.to_row(), now),
                )
            for job_id in deletes:
                await db.execute("DELETE FROM notification_records WHERE job_id = ?", (job_id,))
            await self._append(db, audit)
        logger.debug(
            "Committed tick: %d upsert(s), %d delete(s), %d audit entr(ies)",
            len(upserts),
            len(deletes),
            len(audit),
        )

    # -- Task runs ---------------------------------------------------------------

    async def load_task_runs(self) -> dict[str, TaskRunRecord]:
        """Return the last-run record of every task that has ever run."""
        await self.initialise()
        async with transaction(self._db_path) as db:
            cursor = await db.execute(
                """
                SELECT task_name, last_run_at, last_run_status, last_run_duration_ms
                FROM task_runs
                """
            )
            rows = await cursor.fetchall()
        return {row[0]: TaskRunRecord.from_row(row) for row in rows}

    async def record_task_run(
        self, record: TaskRunRecord, audit: Iterable[AuditEntry] = ()
    ) -> None:
        """Upsert a task's last-run record together with its audit entries."""
        await self.initialise()
        async with transaction(self._db_path, write=True) as db:
            await db.execute(
                """
                INSERT INTO task_runs
                    (task_name, last_run_at, last_run_status, last_run_duration_ms, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (task_name) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_run_status = excluded.last_run_status,
                    last_run_duration_ms = excluded.last_run_duration_ms,
                    updated_at = excluded.updated_at
                """,
                (*record.to_row(), to_iso(utcnow())),
            )
            await self._append(db, audit)

    # -- Audit log ---------------------------------------------------------------

    async def append_audit(self, entries: Iterable[AuditEntry]) -> None:
        entries = list(entries)
        if not entries:
            return
        await self.initialise()
        async with transaction(self._db_path, write=True) as db:
            await self._append(db, entries)

    async def list_audit(
        self,
        *,
        action: str | None = None,
        job_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Return audit entries oldest first, optionally filtered."""
        await self.initialise()
        clauses, params = [], []
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        sql = "SELECT timestamp, action, job_id, task_name, outcome, detail FROM audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with transaction(self._db_path) as db:
            cursor = await db.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        return [AuditEntry.from_row(row) for row in rows]

    async def prune_audit(self, before: datetime, marker: AuditEntry | None = None) -> int:
        """Delete entries older than *before*. Appends *marker* if anything was removed."""
        await self.initialise()
        async with transaction(self._db_path, write=True) as db:
            cursor = await db.execute(
                "DELETE FROM audit_log WHERE timestamp < ?", (to_iso(before),)
            )
            pruned = cursor.rowcount
            if pruned and marker is not None:
                await self._append(db, [marker])
        return pruned

    @staticmethod
    async def _append(db: aiosqlite.Connection, entries: Iterable[AuditEntry]) -> None:
        for entry in entries:
            await db.execute(_INSERT_AUDIT, entry.to_row())
