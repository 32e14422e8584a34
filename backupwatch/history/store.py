"""Read-only access to backup runs and per-job schedule rows.

The ``servers``, ``backups`` and ``backup_settings`` tables belong to the
ingestion side, which also creates them. This module only reads: a database
where ingestion has not created them yet lists no jobs.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from backupwatch.clock import parse_timestamp
from backupwatch.db import transaction
from backupwatch.history.models import SUCCESS_STATUSES, BackupJob, ScheduleConfig
from backupwatch.overdue.intervals import parse_duration

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    import aiosqlite

logger = logging.getLogger(__name__)

INGESTION_TABLES = ("servers", "backups", "backup_settings")

_LATEST_RUNS = """
SELECT server_id, backup_name, date, status FROM (
    SELECT server_id, backup_name, date, status,
           ROW_NUMBER() OVER (
               PARTITION BY server_id, backup_name ORDER BY date DESC
           ) AS rn
    FROM backups
) WHERE rn = 1
"""

_SUCCESSFUL_RUNS = f"""
SELECT server_id, backup_name, date FROM (
    SELECT server_id, backup_name, date,
           ROW_NUMBER() OVER (
               PARTITION BY server_id, backup_name ORDER BY date DESC
           ) AS rn
    FROM backups
    WHERE status IN ({", ".join("?" for _ in SUCCESS_STATUSES)})
) WHERE rn <= ?
ORDER BY server_id, backup_name, date DESC
"""


class JobHistoryStore:
    """Builds :class:`BackupJob` snapshots from the shared database.

    Args:
        db_path: SQLite file shared with the ingestion process.
        default_tolerance: Tolerance used when a job has no explicit one.
        history_depth: How many recent successful runs to load per job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        default_tolerance: timedelta = timedelta(hours=1),
        history_depth: int = 10,
    ) -> None:
        self._db_path = db_path
        self._default_tolerance = default_tolerance
        self._history_depth = history_depth
        self._missing_logged = False

    async def list_jobs(self) -> list[BackupJob]:
        """Return every known job, read in one consistent snapshot.

        A job is known if it has at least one run or a settings row. Tables
        the ingestion side has not created yet read as empty.
        """
        async with transaction(self._db_path) as db:
            present = await self._present_tables(db)
            self._note_missing(present)
            servers = await self._load_servers(db) if "servers" in present else {}
            configs = await self._load_configs(db) if "backup_settings" in present else {}
            if "backups" in present:
                latest = await self._load_latest(db)
                successes = await self._load_successes(db)
            else:
                latest, successes = {}, {}

        keys = sorted(set(latest) | set(configs) | set(successes))
        jobs = []
        for key in keys:
            server_id, backup_name = key
            last_run = latest.get(key)
            runs = successes.get(key, [])
            jobs.append(
                BackupJob(
                    server_id=server_id,
                    backup_name=backup_name,
                    server_name=servers.get(server_id, ""),
                    schedule=configs.get(key) or self._default_config(),
                    last_seen_at=runs[0] if runs else None,
                    last_run_at=last_run[0] if last_run else None,
                    last_run_status=last_run[1] if last_run else None,
                    successful_runs=tuple(runs),
                )
            )
        return jobs

    # -- Internal ----------------------------------------------------------------

    async def _present_tables(self, db: aiosqlite.Connection) -> set[str]:
        cursor = await db.execute(
            f"SELECT name FROM sqlite_master WHERE type = 'table' AND name IN "
            f"({', '.join('?' for _ in INGESTION_TABLES)})",
            INGESTION_TABLES,
        )
        return {row[0] for row in await cursor.fetchall()}

    def _note_missing(self, present: set[str]) -> None:
        missing = [name for name in INGESTION_TABLES if name not in present]
        if not missing:
            self._missing_logged = False
            return
        if not self._missing_logged:
            logger.warning(
                "Backup history tables not created yet (%s); treating as empty",
                ", ".join(missing),
            )
            self._missing_logged = True

    def _default_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            enabled=True,
            expected_interval=None,
            tolerance=self._default_tolerance,
        )

    async def _load_servers(self, db: aiosqlite.Connection) -> dict[str, str]:
        cursor = await db.execute("SELECT id, name, alias FROM servers")
        rows = await cursor.fetchall()
        return {row[0]: (row[2] or row[1] or "") for row in rows}

    async def _load_latest(
        self, db: aiosqlite.Connection
    ) -> dict[tuple[str, str], tuple[datetime | None, str]]:
        cursor = await db.execute(_LATEST_RUNS)
        rows = await cursor.fetchall()
        return {(row[0], row[1]): (parse_timestamp(row[2]), row[3]) for row in rows}

    async def _load_successes(
        self, db: aiosqlite.Connection
    ) -> dict[tuple[str, str], list[datetime]]:
        cursor = await db.execute(_SUCCESSFUL_RUNS, (*SUCCESS_STATUSES, self._history_depth))
        rows = await cursor.fetchall()
        runs: dict[tuple[str, str], list[datetime]] = {}
        for server_id, backup_name, date in rows:
            ts = parse_timestamp(date)
            if ts is not None:
                runs.setdefault((server_id, backup_name), []).append(ts)
        return runs

    async def _load_configs(
        self, db: aiosqlite.Connection
    ) -> dict[tuple[str, str], ScheduleConfig]:
        cursor = await db.execute(
            """
            SELECT server_id, backup_name, overdue_enabled, expected_interval,
                   tolerance, channels, allowed_weekdays
            FROM backup_settings
            """
        )
        rows = await cursor.fetchall()
        return {(row[0], row[1]): self._config_from_row(row) for row in rows}

    def _config_from_row(self, row: tuple) -> ScheduleConfig:
        job = f"{row[0]}:{row[1]}"
        return ScheduleConfig(
            enabled=bool(row[2]),
            expected_interval=self._optional_duration(row[3], job, "expected_interval"),
            tolerance=(
                self._optional_duration(row[4], job, "tolerance") or self._default_tolerance
            ),
            channels=_parse_names(row[5]),
            allowed_weekdays=_parse_weekdays(row[6], job),
        )

    @staticmethod
    def _optional_duration(value: str | None, job: str, column: str) -> timedelta | None:
        if not value or not value.strip():
            return None
        try:
            return parse_duration(value)
        except ValueError:
            logger.warning("Ignoring invalid %s %r for job %s", column, value, job)
            return None


def _parse_names(value: str | None) -> tuple[str, ...] | None:
    if not value:
        return None
    names = tuple(name.strip() for name in value.split(",") if name.strip())
    return names or None


def _parse_weekdays(value: str | None, job: str) -> frozenset[int] | None:
    if not value or not value.strip():
        return None
    try:
        days = frozenset(int(part) for part in value.split(",") if part.strip())
    except ValueError:
        logger.warning("Ignoring invalid allowed_weekdays %r for job %s", value, job)
        return None
    if not days or not days <= set(range(7)):
        logger.warning("Ignoring out-of-range allowed_weekdays %r for job %s", value, job)
        return None
    return days
