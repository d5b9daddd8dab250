"""Tests for the task scheduler."""

import asyncio
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from papertrader.engine.scheduler import TaskScheduler, TaskState, get_trigger


class GatedBody:
    """Task body that blocks until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        self.started.set()
        await self.release.wait()


async def _noop():
    return None


# ---------------------------------------------------------------------------
# 1. Triggers
# ---------------------------------------------------------------------------

def test_minute_interval_spec():
    trigger = get_trigger("15m")
    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval.total_seconds() == 15 * 60


def test_named_interval_spec():
    trigger = get_trigger("4h")
    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval.total_seconds() == 4 * 3600


def test_crontab_spec():
    assert isinstance(get_trigger("0 9 * * *"), CronTrigger)


@pytest.mark.parametrize("spec", ["", "0m", "every day", "61 9 * * *", "0 9 * *"])
def test_invalid_spec_raises(spec):
    with pytest.raises(ValueError):
        get_trigger(spec)


def test_register_rejects_invalid_spec():
    scheduler = TaskScheduler()
    with pytest.raises(ValueError):
        scheduler.register("bad", "Bad", "not a cron", _noop)
    assert scheduler.tasks == []


def test_get_unknown_task():
    with pytest.raises(KeyError):
        TaskScheduler().get("missing")


# ---------------------------------------------------------------------------
# 2. Overlap gate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped():
    on_skip = MagicMock()
    scheduler = TaskScheduler(on_skip=on_skip)
    body = GatedBody()
    scheduler.register("buy", "Buy", "0 9 * * *", body)

    first = asyncio.create_task(scheduler.trigger("buy"))
    await body.started.wait()
    assert scheduler.get("buy").state is TaskState.RUNNING

    assert await scheduler.trigger("buy") is False

    body.release.set()
    assert await first is True

    task = scheduler.get("buy")
    assert body.calls == 1
    assert task.run_count == 1
    assert task.skipped_count == 1
    assert task.state is TaskState.IDLE
    on_skip.assert_called_once_with(task)


@pytest.mark.asyncio
async def test_scheduled_fire_respects_gate():
    scheduler = TaskScheduler()
    body = GatedBody()
    scheduler.register("sell", "Sell", "0 15 * * *", body)

    run = scheduler._dispatch("sell")
    await body.started.wait()
    await scheduler._on_fire("sell")

    assert scheduler.get("sell").skipped_count == 1
    body.release.set()
    await run
    assert body.calls == 1


@pytest.mark.asyncio
async def test_reregister_during_run_reopens_gate_after_finish():
    scheduler = TaskScheduler()
    body = GatedBody()
    scheduler.register("buy", "Buy", "0 9 * * *", body)

    run = scheduler._dispatch("buy")
    await body.started.wait()
    replacement = scheduler.register("buy", "Buy v2", "0 10 * * *", _noop)
    assert replacement.state is TaskState.RUNNING
    assert await scheduler.trigger("buy") is False

    body.release.set()
    await run

    assert scheduler.get("buy") is replacement
    assert replacement.state is TaskState.IDLE
    assert await scheduler.trigger("buy") is True
    assert replacement.run_count == 1


# ---------------------------------------------------------------------------
# 3. Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failing_body_records_error_and_recovers():
    on_error = MagicMock()
    scheduler = TaskScheduler(on_error=on_error)
    outcomes = [RuntimeError("feed down"), None]

    async def body():
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    scheduler.register("refresh", "Refresh", "10m", body)

    assert await scheduler.trigger("refresh") is True
    task = scheduler.get("refresh")
    assert task.last_error == "feed down"
    assert task.state is TaskState.IDLE
    on_error.assert_called_once()
    assert on_error.call_args.args[0] is task

    await scheduler.trigger("refresh")
    assert task.last_error is None
    assert task.run_count == 2


@pytest.mark.asyncio
async def test_hook_failure_is_contained():
    scheduler = TaskScheduler(on_error=MagicMock(side_effect=RuntimeError("hook")))

    async def body():
        raise ValueError("boom")

    scheduler.register("t", "T", "10m", body)
    await scheduler.trigger("t")
    assert scheduler.get("t").state is TaskState.IDLE


# ---------------------------------------------------------------------------
# 4. Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_is_idempotent():
    scheduler = TaskScheduler()
    scheduler.register("a", "A", "0 9 * * *", _noop)
    scheduler.register("b", "B", "30m", _noop)

    scheduler.start()
    scheduler.start()
    try:
        assert scheduler.running
        assert len(scheduler._scheduler.get_jobs()) == 2
        assert all(t.next_run_at is not None for t in scheduler.tasks)
        status = scheduler.status()
        assert status["task_count"] == 2
        assert status["started_at"] is not None
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert all(t.state is TaskState.STOPPED for t in scheduler.tasks)
    assert all(t.next_run_at is None for t in scheduler.tasks)


@pytest.mark.asyncio
async def test_restart_after_stop():
    scheduler = TaskScheduler()
    scheduler.register("a", "A", "0 9 * * *", _noop)
    scheduler.start()
    scheduler.stop()

    scheduler.start()
    try:
        assert scheduler.get("a").state is TaskState.IDLE
        assert scheduler.get("a").next_run_at is not None
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_register_while_running_schedules_job():
    scheduler = TaskScheduler()
    scheduler.start()
    try:
        task = scheduler.register("late", "Late", "5m", _noop)
        assert scheduler._scheduler.get_job("late") is not None
        assert task.next_run_at is not None
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_stop_lets_running_body_finish():
    scheduler = TaskScheduler()
    body = GatedBody()
    scheduler.register("report", "Report", "0 * * * *", body)
    scheduler.start()

    run = scheduler._dispatch("report")
    await body.started.wait()
    scheduler.stop()

    task = scheduler.get("report")
    assert task.state is TaskState.RUNNING
    assert not run.done()

    body.release.set()
    await run
    assert task.state is TaskState.STOPPED
    assert task.last_error is None


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_runs():
    scheduler = TaskScheduler()
    body = GatedBody()
    scheduler.register("report", "Report", "0 * * * *", body)
    scheduler.start()

    run = scheduler._dispatch("report")
    await body.started.wait()
    asyncio.get_running_loop().call_later(0.05, body.release.set)

    await scheduler.shutdown(timeout=5)

    assert run.done()
    assert scheduler.get("report").run_count == 1
    assert not scheduler.running


@pytest.mark.asyncio
async def test_status_lists_task_fields():
    scheduler = TaskScheduler()
    scheduler.register("a", "A", "0 9 * * *", _noop)
    await scheduler.trigger("a")

    [entry] = scheduler.status()["tasks"]
    assert entry["id"] == "a"
    assert entry["state"] == "idle"
    assert entry["run_count"] == 1
    assert entry["last_run_at"] is not None
    assert entry["last_duration_seconds"] >= 0
