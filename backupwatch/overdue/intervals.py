"""Compact duration strings (``"1d"``, ``"1h30m"``, ``"3600"``) and gap statistics."""

from __future__ import annotations

import re
import statistics
from datetime import datetime, timedelta

_UNIT_SECONDS = {
    "w": 7 * 86400,
    "d": 86400,
    "h": 3600,
    "m": 60,
    "s": 1,
}

_TOKEN = re.compile(r"(\d+)\s*([wdhms])", re.IGNORECASE)


def parse_duration(value: str) -> timedelta:
    """Parse ``"2w"``, ``"1d12h"``, ``"90m"``, ``"45s"`` or bare seconds.

    Raises ValueError on anything else, including an empty string.
    """
    text = value.strip()
    if not text:
        msg = "empty duration"
        raise ValueError(msg)
    if text.isdigit():
        return timedelta(seconds=int(text))

    total = 0
    pos = 0
    for match in _TOKEN.finditer(text):
        if text[pos : match.start()].strip():
            break
        total += int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]
        pos = match.end()
    if pos == 0 or text[pos:].strip():
        msg = f"invalid duration {value!r}"
        raise ValueError(msg)
    return timedelta(seconds=total)


def format_duration(delta: timedelta) -> str:
    """Inverse of :func:`parse_duration` for display: ``timedelta(hours=25)`` gives ``"1d1h"``."""
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "0s"
    parts = []
    for unit in ("d", "h", "m", "s"):
        size = _UNIT_SECONDS[unit]
        if seconds >= size:
            count, seconds = divmod(seconds, size)
            parts.append(f"{count}{unit}")
    return "".join(parts)


def median_gap(timestamps: list[datetime]) -> timedelta | None:
    """Median gap between consecutive runs, in whole seconds.

    Input order does not matter. Returns None with fewer than two distinct
    timestamps.
    """
    ordered = sorted(set(timestamps))
    if len(ordered) < 2:
        return None
    gaps = [(later - earlier).total_seconds() for earlier, later in zip(ordered, ordered[1:])]
    return timedelta(seconds=int(statistics.median(gaps)))
