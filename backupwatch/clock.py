"""Time source and timestamp helpers.

Every "now" used by the service comes from a ``Clock`` callable so tests can
pin time. Timestamps are persisted as ISO 8601 UTC strings and compared at
whole-second granularity.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(UTC).replace(microsecond=0)


def truncate(ts: datetime) -> datetime:
    """Drop sub-second precision and attach UTC to naive values."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.replace(microsecond=0)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 string. Naive values are treated as UTC."""
    if not value:
        return None
    return truncate(datetime.fromisoformat(value))


def to_iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return truncate(ts).astimezone(UTC).isoformat()
