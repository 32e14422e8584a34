"""Recurring task system: definitions, run records and the scheduler engine."""

from backupwatch.scheduler.engine import TaskScheduler
from backupwatch.scheduler.models import TaskDefinition, TaskRunRecord, TriggerResult

__all__ = [
    "TaskDefinition",
    "TaskRunRecord",
    "TaskScheduler",
    "TriggerResult",
]
