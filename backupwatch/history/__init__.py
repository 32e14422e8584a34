"""Read-only view over backup job history and per-job schedule settings."""

from backupwatch.history.models import BackupJob, ScheduleConfig
from backupwatch.history.store import JobHistoryStore

__all__ = [
    "BackupJob",
    "JobHistoryStore",
    "ScheduleConfig",
]
