"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from backupwatch.history.store import JobHistoryStore
from backupwatch.notifications.dispatcher import NotificationDispatcher
from backupwatch.store import StateStore

T0 = datetime(2025, 6, 10, 12, 0, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


class FakeChannel:
    """Minimal channel implementation for testing.

    *failures* is consumed one item per send: an exception is raised,
    ``None`` lets that send succeed.
    """

    def __init__(
        self,
        channel_name: str = "ntfy",
        kind: str = "push",
        failures: list[Exception | None] | None = None,
    ) -> None:
        self._name = channel_name
        self._kind = kind
        self.failures = list(failures or [])
        self.sent = []
        self.calls = 0
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> str:
        return self._kind

    async def send(self, notification) -> None:
        self.calls += 1
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        self.sent.append(notification)

    async def close(self) -> None:
        self.closed = True


INGESTION_SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    alias TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    server_id TEXT NOT NULL,
    backup_name TEXT NOT NULL,
    date TEXT NOT NULL,
    status TEXT NOT NULL,
    duration_seconds INTEGER
);
CREATE TABLE IF NOT EXISTS backup_settings (
    server_id TEXT NOT NULL,
    backup_name TEXT NOT NULL,
    overdue_enabled INTEGER NOT NULL DEFAULT 1,
    expected_interval TEXT,
    tolerance TEXT,
    channels TEXT,
    allowed_weekdays TEXT,
    PRIMARY KEY (server_id, backup_name)
);
"""


class Seeder:
    """Plays the ingestion side: creates its tables and writes its rows."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    async def _execute(self, sql: str, params: tuple) -> None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.executescript(INGESTION_SCHEMA)
            await db.execute(sql, params)
            await db.commit()

    async def add_server(self, server_id: str, name: str, alias: str = "") -> None:
        await self._execute(
            "INSERT INTO servers (id, name, alias) VALUES (?, ?, ?)", (server_id, name, alias)
        )

    async def add_run(
        self,
        server_id: str,
        backup_name: str,
        date: datetime,
        status: str = "Success",
    ) -> None:
        await self._execute(
            "INSERT INTO backups (server_id, backup_name, date, status) VALUES (?, ?, ?, ?)",
            (server_id, backup_name, date.isoformat(), status),
        )

    async def add_settings(
        self,
        server_id: str,
        backup_name: str,
        *,
        enabled: bool = True,
        expected_interval: str | None = None,
        tolerance: str | None = None,
        channels: str | None = None,
        allowed_weekdays: str | None = None,
    ) -> None:
        await self._execute(
            """
            INSERT OR REPLACE INTO backup_settings
                (server_id, backup_name, overdue_enabled, expected_interval,
                 tolerance, channels, allowed_weekdays)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                server_id,
                backup_name,
                int(enabled),
                expected_interval,
                tolerance,
                channels,
                allowed_weekdays,
            ),
        )


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def state_store(db_path: Path) -> StateStore:
    return StateStore(db_path)


@pytest.fixture
def history(db_path: Path) -> JobHistoryStore:
    return JobHistoryStore(db_path, default_tolerance=timedelta(hours=1))


@pytest.fixture
def seed(db_path: Path) -> Seeder:
    return Seeder(db_path)


@pytest.fixture
def make_channel():
    """Factory: ``make_channel("email", kind="email", failures=[...])``."""
    return FakeChannel


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_dispatcher():
    """Factory for dispatchers that never really sleep between retries."""

    def _make(*channels, **kwargs) -> NotificationDispatcher:
        kwargs.setdefault("sleep", _no_sleep)
        d = NotificationDispatcher(**kwargs)
        for ch in channels:
            d.register_channel(ch)
        return d

    return _make


@pytest.fixture
def dispatcher(make_dispatcher, channel: FakeChannel) -> NotificationDispatcher:
    """Dispatcher with one fake push channel."""
    return make_dispatcher(channel, max_attempts=3, backoff=1.0, backoff_max=8.0)
