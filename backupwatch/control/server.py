"""Control REST surface for the main application.

Process-internal and unauthenticated: the caller is expected to sit behind
whatever boundary already authorized it, so the server binds to localhost by
default. Uses aiohttp's AppRunner/TCPSite for non-blocking start/stop in the
same event loop as the scheduler.
"""

from __future__ import annotations

import logging

from aiohttp import web

from backupwatch.scheduler.engine import TaskScheduler
from backupwatch.scheduler.models import REASON_UNKNOWN_TASK

logger = logging.getLogger(__name__)

SCHEDULER_KEY = web.AppKey("scheduler", TaskScheduler)


async def _health(request: web.Request) -> web.Response:
    """GET /health: liveness plus store health; never touches the database."""
    scheduler = request.app[SCHEDULER_KEY]
    return web.json_response({"status": scheduler.health()})


async def _status(request: web.Request) -> web.Response:
    """GET /status: registered tasks and their last run."""
    scheduler = request.app[SCHEDULER_KEY]
    return web.json_response({
        "tasks": scheduler.status(),
        "uptimeSeconds": scheduler.uptime_seconds,
    })


async def _trigger(request: web.Request) -> web.Response:
    """POST /tasks/{name}/trigger: start a task now; never waits for it."""
    scheduler = request.app[SCHEDULER_KEY]
    name = request.match_info["name"]
    result = await scheduler.trigger(name)
    if result.accepted:
        status = 202
    elif result.reason == REASON_UNKNOWN_TASK:
        status = 404
    else:
        status = 409
    logger.info(
        "Trigger request for '%s': accepted=%s reason=%s", name, result.accepted, result.reason
    )
    return web.json_response(result.to_dict(), status=status)


def _create_web_app(scheduler: TaskScheduler) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application()
    app[SCHEDULER_KEY] = scheduler
    app.router.add_get("/health", _health)
    app.router.add_get("/status", _status)
    app.router.add_post("/tasks/{name}/trigger", _trigger)
    return app


class ControlServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, scheduler: TaskScheduler, host: str = "127.0.0.1", port: int = 8667) -> None:
        self._scheduler = scheduler
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        app = _create_web_app(self._scheduler)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Control API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Control API stopped")
