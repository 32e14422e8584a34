"""Overdue detection and per-job notification state."""

from backupwatch.overdue.detector import OverdueState, evaluate
from backupwatch.overdue.intervals import format_duration, median_gap, parse_duration
from backupwatch.overdue.tracker import NotificationRecord, Transition, decide

__all__ = [
    "NotificationRecord",
    "OverdueState",
    "Transition",
    "decide",
    "evaluate",
    "format_duration",
    "median_gap",
    "parse_duration",
]
