"""Control REST API for querying and triggering scheduled tasks."""

from backupwatch.control.server import ControlServer

__all__ = ["ControlServer"]
