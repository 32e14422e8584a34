"""backupwatch service entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import timedelta

from backupwatch.audit import AuditRetention
from backupwatch.config import ConfigurationError, Settings, settings
from backupwatch.control.server import ControlServer
from backupwatch.history.store import JobHistoryStore
from backupwatch.notifications.dispatcher import NotificationDispatcher
from backupwatch.notifications.messages import MessageBuilder
from backupwatch.overdue.check import TASK_NAME as OVERDUE_TASK_NAME
from backupwatch.overdue.check import OverdueCheck
from backupwatch.scheduler.engine import TaskScheduler
from backupwatch.scheduler.models import TaskDefinition
from backupwatch.store import StateStore

logger = logging.getLogger(__name__)

AUDIT_TASK_NAME = "audit-log-cleanup"


def build_scheduler(
    config: Settings,
    store: StateStore,
    dispatcher: NotificationDispatcher,
) -> TaskScheduler:
    """Wire the recurring tasks onto a new scheduler."""
    history = JobHistoryStore(
        config.database_path,
        default_tolerance=config.tolerance_delta,
        history_depth=config.interval_inference_runs,
    )
    check = OverdueCheck(
        history,
        store,
        dispatcher,
        messages=MessageBuilder(config.overdue_title_template, config.overdue_message_template),
        default_interval=config.default_interval_delta,
        escalation_interval=config.renotify_delta,
        notify_on_recovery=config.notify_on_recovery,
    )
    retention = AuditRetention(store, retention=timedelta(days=config.audit_retention_days))

    scheduler = TaskScheduler(
        store,
        store_failure_threshold=config.store_failure_threshold,
        drain_timeout=config.shutdown_timeout_seconds,
    )
    scheduler.register(
        TaskDefinition(
            name=OVERDUE_TASK_NAME,
            interval=config.check_interval_delta,
            run=check.run,
            enabled=config.overdue_check_enabled,
            description="Detect overdue backups and send notifications",
        )
    )
    scheduler.register(
        TaskDefinition(
            name=AUDIT_TASK_NAME,
            interval=config.audit_cleanup_delta,
            run=retention.run,
            enabled=config.audit_retention_days > 0,
            description=f"Delete audit entries older than {config.audit_retention_days} days",
        )
    )
    return scheduler


async def run_service(config: Settings) -> None:
    """Run until SIGINT/SIGTERM, then drain and shut down."""
    dispatcher = NotificationDispatcher.from_settings(config)
    if not dispatcher.list_channels():
        logger.warning("No notification channels configured; overdue alerts will not be sent")

    store = StateStore(config.database_path)
    await store.initialise()

    scheduler = build_scheduler(config, store, dispatcher)
    server = ControlServer(scheduler, host=config.control_host, port=config.control_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await scheduler.start()
    try:
        await server.start()
        logger.info("backupwatch running (database=%s)", config.database_path)
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await server.stop()
        await scheduler.stop()
        await dispatcher.close()


def main() -> None:
    """Start the service with settings from the environment."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    try:
        asyncio.run(run_service(settings))
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
