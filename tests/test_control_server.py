"""Tests for the control REST API."""

import asyncio
from datetime import timedelta

from aiohttp.test_utils import TestClient, TestServer

from backupwatch.clock import utcnow
from backupwatch.control.server import ControlServer, _create_web_app
from backupwatch.scheduler.engine import TaskScheduler
from backupwatch.scheduler.models import TaskDefinition, TaskRunRecord

# -- Helpers -----------------------------------------------------------------


class _Blocking:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self) -> str:
        self.started.set()
        await self.release.wait()
        return "ok"


async def _make_scheduler(state_store, run=None) -> TaskScheduler:
    await state_store.record_task_run(
        TaskRunRecord("overdue-backup-check", utcnow(), "success", 12)
    )
    scheduler = TaskScheduler(state_store, drain_timeout=2.0)
    scheduler.register(
        TaskDefinition(
            name="overdue-backup-check",
            interval=timedelta(minutes=20),
            run=run or _Blocking(),
            description="Detect overdue backups",
        )
    )
    scheduler.register(
        TaskDefinition(
            name="audit-log-cleanup",
            interval=timedelta(days=1),
            run=_Blocking(),
            enabled=False,
        )
    )
    await scheduler.start()
    return scheduler


async def _make_client(scheduler):
    """Create a TestClient for the control app."""
    server = TestServer(_create_web_app(scheduler))
    client = TestClient(server)
    await client.start_server()
    return client


# -- Health and status --------------------------------------------------------


async def test_health(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    client = await _make_client(scheduler)
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}
    finally:
        await client.close()
        await scheduler.stop()


async def test_health_degraded(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    scheduler._store_failures = 3
    client = await _make_client(scheduler)
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "degraded"
    finally:
        await client.close()
        await scheduler.stop()


async def test_status(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    client = await _make_client(scheduler)
    try:
        resp = await client.get("/status")
        assert resp.status == 200
        data = await resp.json()
        assert data["uptimeSeconds"] >= 0
        tasks = {t["name"]: t for t in data["tasks"]}
        assert set(tasks) == {"overdue-backup-check", "audit-log-cleanup"}
        check = tasks["overdue-backup-check"]
        assert check["intervalSeconds"] == 1200
        assert check["lastRunStatus"] == "success"
        assert check["lastRunDurationMs"] == 12
        assert check["nextRunAt"] is not None
        assert not tasks["audit-log-cleanup"]["enabled"]
    finally:
        await client.close()
        await scheduler.stop()


# -- Triggers -----------------------------------------------------------------


async def test_trigger_accepted_then_busy(state_store) -> None:
    task = _Blocking()
    scheduler = await _make_scheduler(state_store, run=task)
    client = await _make_client(scheduler)
    try:
        resp = await client.post("/tasks/overdue-backup-check/trigger")
        assert resp.status == 202
        assert await resp.json() == {"accepted": True}

        await asyncio.wait_for(task.started.wait(), timeout=2)
        resp = await client.post("/tasks/overdue-backup-check/trigger")
        assert resp.status == 409
        assert await resp.json() == {"accepted": False, "reason": "busy"}
    finally:
        task.release.set()
        await client.close()
        await scheduler.stop()


async def test_trigger_unknown_task(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    client = await _make_client(scheduler)
    try:
        resp = await client.post("/tasks/nope/trigger")
        assert resp.status == 404
        assert (await resp.json())["reason"] == "unknown_task"
    finally:
        await client.close()
        await scheduler.stop()


async def test_trigger_disabled_task(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    client = await _make_client(scheduler)
    try:
        resp = await client.post("/tasks/audit-log-cleanup/trigger")
        assert resp.status == 409
        assert (await resp.json())["reason"] == "disabled"
    finally:
        await client.close()
        await scheduler.stop()


async def test_trigger_rejects_get(state_store) -> None:
    scheduler = await _make_scheduler(state_store)
    client = await _make_client(scheduler)
    try:
        resp = await client.get("/tasks/overdue-backup-check/trigger")
        assert resp.status == 405
    finally:
        await client.close()
        await scheduler.stop()


# -- Server lifecycle ---------------------------------------------------------


async def test_control_server_start_stop(state_store, unused_tcp_port) -> None:
    scheduler = await _make_scheduler(state_store)
    server = ControlServer(scheduler, host="127.0.0.1", port=unused_tcp_port)
    try:
        await server.start()
        assert server._runner is not None
    finally:
        await server.stop()
        await scheduler.stop()
    assert server._runner is None
