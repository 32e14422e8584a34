"""Short-lived aiosqlite connections with explicit transactions.

The database file is shared with the web-facing process, so every
connection runs in WAL mode with a busy timeout, and every unit of work is a
single ``BEGIN ... COMMIT``. Transactions are managed by hand
(``isolation_level=None``) so reads can use a deferred ``BEGIN`` and writes
take the lock up front with ``BEGIN IMMEDIATE``.

Lock contention and unreadable files surface as
:class:`StoreUnavailableError` so callers can abort a tick without treating
it as a bug.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import aiosqlite

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


class StoreUnavailableError(Exception):
    """The persisted store is unreachable, locked or unreadable."""


async def connect(path: Path) -> aiosqlite.Connection:
    """Open a connection in autocommit mode with WAL and busy timeout set."""
    path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(path), isolation_level=None)
    try:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    except BaseException:
        await db.close()
        raise
    return db


@asynccontextmanager
async def transaction(path: Path, *, write: bool = False) -> AsyncIterator[aiosqlite.Connection]:
    """Yield a connection inside one transaction, committed on clean exit.

    ``write=True`` uses ``BEGIN IMMEDIATE`` so the write lock is acquired
    before any statement runs. Any exception rolls back.
    """
    try:
        db = await connect(path)
    except aiosqlite.OperationalError as exc:
        raise StoreUnavailableError(f"cannot open {path}: {exc}") from exc

    try:
        await db.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")
    except aiosqlite.OperationalError as exc:
        logger.warning("Store operation failed on %s: %s", path, exc)
        raise StoreUnavailableError(str(exc)) from exc
    finally:
        await db.close()
