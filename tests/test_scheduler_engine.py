"""Tests for TaskScheduler: lifecycle, busy handling, triggers and health."""

import asyncio
from datetime import timedelta

import pytest

from backupwatch import audit
from backupwatch.clock import utcnow
from backupwatch.db import StoreUnavailableError
from backupwatch.scheduler.engine import TaskScheduler
from backupwatch.scheduler.models import TaskDefinition, TaskRunRecord
from backupwatch.store import StateStore


class Probe:
    """Task body that records calls and optionally blocks until released."""

    def __init__(self, block: bool = False) -> None:
        self.calls = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def __call__(self) -> str:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return "probe done"


@pytest.fixture
async def engine(state_store):
    scheduler = TaskScheduler(state_store, drain_timeout=2.0)
    yield scheduler
    await scheduler.stop()


async def _ran_recently(state_store, *names) -> None:
    """Persist a fresh run so startup reconciliation defers the first tick."""
    for name in names:
        await state_store.record_task_run(TaskRunRecord(name, utcnow(), "success", 1))


def _task(name="probe", run=None, **kwargs) -> TaskDefinition:
    kwargs.setdefault("interval", timedelta(hours=1))
    return TaskDefinition(name=name, run=run or Probe(), **kwargs)


# -- Registration --------------------------------------------------------------


def test_duplicate_task_rejected(state_store) -> None:
    engine = TaskScheduler(state_store)
    engine.register(_task())
    with pytest.raises(ValueError, match="already registered"):
        engine.register(_task())


def test_non_positive_interval_rejected(state_store) -> None:
    engine = TaskScheduler(state_store)
    with pytest.raises(ValueError, match="positive interval"):
        engine.register(_task(interval=timedelta(0)))


async def test_register_after_start_rejected(engine) -> None:
    await engine.start()
    with pytest.raises(RuntimeError):
        engine.register(_task())


# -- Lifecycle -----------------------------------------------------------------


async def test_start_and_stop(engine) -> None:
    assert engine.uptime_seconds == 0
    await engine.start()
    assert engine.running
    await engine.stop()
    assert not engine.running


async def test_first_run_is_immediate_without_history(engine, state_store) -> None:
    probe = Probe()
    engine.register(_task(run=probe))

    await engine.start()
    await asyncio.wait_for(probe.started.wait(), timeout=5)
    assert await engine.join(2)

    runs = await state_store.load_task_runs()
    assert runs["probe"].last_run_status == "success"
    [entry] = await state_store.list_audit(action=audit.TASK_RUN_COMPLETED)
    assert entry.task_name == "probe"
    assert entry.detail == "schedule: probe done"


async def test_recent_run_defers_first_tick(engine, state_store) -> None:
    await _ran_recently(state_store, "probe")
    probe = Probe()
    engine.register(_task(run=probe))

    await engine.start()

    last_run = (await state_store.load_task_runs())["probe"].last_run_at
    job = engine._scheduler.get_job("probe")
    assert job.next_run_time == last_run + timedelta(hours=1)
    await asyncio.sleep(0.1)
    assert probe.calls == 0


async def test_disabled_task_is_not_scheduled(engine) -> None:
    engine.register(_task(enabled=False))
    await engine.start()
    assert engine._scheduler.get_job("probe") is None
    [status] = engine.status()
    assert not status["enabled"]
    assert status["nextRunAt"] is None


async def test_stop_drains_running_task(engine, state_store) -> None:
    await _ran_recently(state_store, "probe")
    probe = Probe(block=True)
    engine.register(_task(run=probe))
    await engine.start()
    await engine.trigger("probe")
    await asyncio.wait_for(probe.started.wait(), timeout=2)

    stopping = asyncio.create_task(engine.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    probe.release.set()
    await asyncio.wait_for(stopping, timeout=2)

    entries = await state_store.list_audit(action=audit.TASK_RUN_COMPLETED)
    assert [e.detail for e in entries] == ["manual: probe done"]


async def test_stop_cancels_after_drain_timeout(state_store) -> None:
    await _ran_recently(state_store, "probe")
    engine = TaskScheduler(state_store, drain_timeout=0.05)
    probe = Probe(block=True)
    engine.register(_task(run=probe))
    await engine.start()
    await engine.trigger("probe")
    await asyncio.wait_for(probe.started.wait(), timeout=2)
    running = engine._inflight["probe"]

    await engine.stop()

    with pytest.raises(asyncio.CancelledError):
        await running
    assert not engine.is_busy("probe")


# -- Busy handling and manual triggers -----------------------------------------


async def test_trigger_while_running_is_rejected(engine, state_store) -> None:
    await _ran_recently(state_store, "probe")
    probe = Probe(block=True)
    engine.register(_task(run=probe))
    await engine.start()

    first = await engine.trigger("probe")
    await asyncio.wait_for(probe.started.wait(), timeout=2)
    second = await engine.trigger("probe")

    assert first.accepted
    assert not second.accepted
    assert second.reason == "busy"
    assert engine.status()[0]["running"]

    probe.release.set()
    assert await engine.join(2)
    assert probe.calls == 1
    [skipped] = await state_store.list_audit(action=audit.TASK_SKIPPED_BUSY)
    assert skipped.task_name == "probe"
    assert skipped.outcome == "skipped"


async def test_busy_trigger_does_not_wait_for_audit_write(engine, state_store) -> None:
    await _ran_recently(state_store, "probe")
    probe = Probe(block=True)
    engine.register(_task(run=probe))
    await engine.start()
    await engine.trigger("probe")
    await asyncio.wait_for(probe.started.wait(), timeout=2)

    gate = asyncio.Event()
    append_audit = state_store.append_audit

    async def locked_append(entries) -> None:
        await gate.wait()
        await append_audit(entries)

    state_store.append_audit = locked_append
    result = await asyncio.wait_for(engine.trigger("probe"), timeout=1)

    assert result.reason == "busy"
    assert await state_store.list_audit(action=audit.TASK_SKIPPED_BUSY) == []

    gate.set()
    probe.release.set()
    assert await engine.join(2)
    [skipped] = await state_store.list_audit(action=audit.TASK_SKIPPED_BUSY)
    assert skipped.detail.startswith("manual run skipped")


async def test_scheduled_tick_while_running_is_skipped(engine, state_store, caplog) -> None:
    await _ran_recently(state_store, "probe")
    probe = Probe(block=True)
    engine.register(_task(run=probe))
    await engine.start()
    await engine.trigger("probe")
    await asyncio.wait_for(probe.started.wait(), timeout=2)

    await engine._on_tick("probe")

    probe.release.set()
    assert await engine.join(2)
    assert probe.calls == 1
    assert "previous run still in progress" in caplog.text
    [skipped] = await state_store.list_audit(action=audit.TASK_SKIPPED_BUSY)
    assert skipped.detail.startswith("schedule run skipped")


async def test_trigger_unknown_task(engine) -> None:
    await engine.start()
    result = await engine.trigger("nope")
    assert not result.accepted
    assert result.reason == "unknown_task"


async def test_trigger_disabled_task(engine) -> None:
    engine.register(_task(enabled=False))
    await engine.start()
    result = await engine.trigger("probe")
    assert result.reason == "disabled"


async def test_trigger_when_not_running(engine) -> None:
    engine.register(_task())
    result = await engine.trigger("probe")
    assert not result.accepted
    assert result.reason == "shutting_down"


# -- Failures and health -------------------------------------------------------


async def test_failing_task_is_recorded(engine, state_store) -> None:
    async def boom() -> None:
        raise RuntimeError("kaput")

    await _ran_recently(state_store, "boom")
    engine.register(_task("boom", run=boom))
    await engine.start()

    await engine.trigger("boom")
    assert await engine.join(2)

    assert engine.running
    assert (await state_store.load_task_runs())["boom"].last_run_status == "failed"
    [entry] = await state_store.list_audit(action=audit.TASK_RUN_COMPLETED)
    assert entry.outcome == "failed"
    assert "RuntimeError: kaput" in entry.detail
    assert engine.health() == "ok"


async def test_repeated_store_failures_degrade_health(state_store) -> None:
    async def locked() -> None:
        raise StoreUnavailableError("database is locked")

    await _ran_recently(state_store, "locked", "probe")
    engine = TaskScheduler(state_store, store_failure_threshold=2)
    engine.register(_task("locked", run=locked))
    engine.register(_task("probe"))
    await engine.start()
    try:
        await engine.trigger("locked")
        await engine.join(2)
        assert engine.health() == "ok"
        await engine.trigger("locked")
        await engine.join(2)
        assert engine.health() == "degraded"

        await engine.trigger("probe")
        await engine.join(2)
        assert engine.health() == "ok"
    finally:
        await engine.stop()


async def test_unavailable_store_at_start(tmp_path) -> None:
    engine = TaskScheduler(StateStore(tmp_path), store_failure_threshold=1)
    await engine.start()
    try:
        assert engine.running
        assert engine.health() == "degraded"
    finally:
        await engine.stop()


# -- Status --------------------------------------------------------------------


async def test_status_reports_last_run(engine, state_store) -> None:
    await _ran_recently(state_store, "probe")
    engine.register(_task(description="Probe task", interval=timedelta(minutes=20)))
    await engine.start()
    await engine.trigger("probe")
    await engine.join(2)

    [status] = engine.status()

    assert status["name"] == "probe"
    assert status["description"] == "Probe task"
    assert status["enabled"]
    assert not status["running"]
    assert status["intervalSeconds"] == 1200
    assert status["lastRunStatus"] == "success"
    assert status["lastRunAt"] is not None
    assert status["lastRunDurationMs"] >= 0
    assert status["nextRunAt"] is not None
