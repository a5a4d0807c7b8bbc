import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from jobwarden.errors import ActivationError, InvalidCronExpressionError
from jobwarden.jobs.executor import Executor
from jobwarden.jobs.handlers import HandlerRegistry
from jobwarden.jobs.models import (
    ActionType,
    ExecutionStatus,
    JobExecution,
    ScheduledJob,
)
from jobwarden.jobs.registry import SchedulerRegistry
from jobwarden.jobs.store import JobStore

# Monday
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _setup(handler=None):
    clock = _Clock(NOW)
    store = JobStore(clock=clock)
    handlers = HandlerRegistry()
    handlers.register(
        ActionType.REPORT_GENERATE, handler or AsyncMock(return_value={"ok": True})
    )
    scheduler = MagicMock()
    scheduler.add_job.side_effect = lambda *args, **kwargs: MagicMock()
    executor = Executor(store=store, handlers=handlers, scheduler=scheduler, clock=clock)
    registry = SchedulerRegistry(
        scheduler=scheduler, store=store, executor=executor, clock=clock
    )
    return clock, store, scheduler, registry


def _job(schedule, **overrides) -> ScheduledJob:
    data = {
        "owner_id": "owner-1",
        "name": "Weekly review",
        "schedule": schedule,
        "action": {"type": "report_generate"},
    }
    data.update(overrides)
    return ScheduledJob.model_validate(data)


WEEKLY_FRIDAY = {
    "type": "recurring",
    "frequency": "weekly",
    "time": "16:00",
    "days_of_week": [5],
}


def test_schedule_job_arms_cron_trigger():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))

    assert job.next_run == datetime(2026, 10, 23, 16, 0, tzinfo=UTC)
    assert store.get_job(job.id).next_run == job.next_run
    assert registry.is_active(job.id)
    kwargs = scheduler.add_job.call_args.kwargs
    assert scheduler.add_job.call_args.args[0] == registry.fire_job
    assert isinstance(kwargs["trigger"], CronTrigger)
    assert kwargs["id"] == job.id
    assert kwargs["kwargs"] == {"job_id": job.id}
    assert kwargs["replace_existing"] is True


def test_schedule_one_time_in_past_fires_immediately():
    _, _, scheduler, registry = _setup()
    run_at = NOW - timedelta(hours=3)
    job = registry.schedule_job(_job({"type": "one_time", "run_at": run_at}))

    assert job.next_run == run_at
    trigger = scheduler.add_job.call_args.kwargs["trigger"]
    assert isinstance(trigger, DateTrigger)
    assert trigger.run_date == NOW


def test_schedule_interval_arms_first_slot():
    _, _, scheduler, registry = _setup()
    job = registry.schedule_job(_job({"type": "interval", "interval_minutes": 30}))

    assert job.next_run == NOW + timedelta(minutes=30)
    assert scheduler.add_job.call_args.kwargs["trigger"].run_date == NOW + timedelta(minutes=30)


def test_schedule_interval_execute_immediately():
    _, _, scheduler, registry = _setup()
    registry.schedule_job(
        _job(
            {"type": "interval", "interval_minutes": 30},
            metadata={"execute_immediately": True},
        )
    )
    assert scheduler.add_job.call_args.kwargs["trigger"].run_date == NOW


def test_schedule_disabled_job_is_not_armed():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY, enabled=False))
    assert store.get_job(job.id) is not None
    assert job.next_run == datetime(2026, 10, 23, 16, 0, tzinfo=UTC)
    assert not registry.is_active(job.id)
    scheduler.add_job.assert_not_called()


def test_schedule_invalid_cron_stores_nothing():
    _, store, scheduler, registry = _setup()
    with pytest.raises(InvalidCronExpressionError):
        registry.schedule_job(_job({"type": "cron", "cron_expression": "every day"}))
    assert store.list_jobs() == []
    scheduler.add_job.assert_not_called()


def test_activation_failure_leaves_job_disabled():
    _, store, scheduler, registry = _setup()
    scheduler.add_job.side_effect = RuntimeError("scheduler is shut down")
    job = _job(WEEKLY_FRIDAY)
    with pytest.raises(ActivationError):
        registry.schedule_job(job)
    stored = store.get_job(job.id)
    assert stored is not None
    assert stored.enabled is False
    assert not registry.is_active(job.id)


def test_deactivate_twice():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))

    registry.deactivate_job(job.id)
    assert store.get_job(job.id).enabled is False
    registry.deactivate_job(job.id)
    assert store.get_job(job.id).enabled is False

    scheduler.remove_job.assert_called_once_with(job.id)
    assert not registry.is_active(job.id)


def test_deactivate_unknown_job():
    _, _, scheduler, registry = _setup()
    registry.deactivate_job("missing")
    scheduler.remove_job.assert_not_called()


def test_enable_job_rearms():
    clock, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job({"type": "interval", "interval_minutes": 15}))
    registry.deactivate_job(job.id)
    clock.now = NOW + timedelta(hours=2)

    enabled = registry.enable_job(job.id)

    assert enabled.enabled is True
    assert enabled.next_run == clock.now + timedelta(minutes=15)
    assert registry.is_active(job.id)
    assert scheduler.add_job.call_args.kwargs["trigger"].run_date == enabled.next_run


def test_update_schedule_keeps_single_timer():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))

    updated = registry.update_job_schedule(job.id, {"type": "interval", "interval_minutes": 5})

    scheduler.remove_job.assert_called_once_with(job.id)
    assert scheduler.add_job.call_count == 2
    assert registry.active_job_ids == {job.id}
    assert updated.enabled is True
    assert updated.next_run == NOW + timedelta(minutes=5)
    assert isinstance(scheduler.add_job.call_args.kwargs["trigger"], DateTrigger)


def test_update_schedule_of_disabled_job_stays_disabled():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY, enabled=False))

    updated = registry.update_job_schedule(
        job.id, {"type": "cron", "cron_expression": "0 9 * * *"}
    )

    assert updated.enabled is False
    assert updated.next_run == datetime(2026, 10, 20, 9, 0, tzinfo=UTC)
    scheduler.add_job.assert_not_called()


def test_remove_job_keeps_executions():
    _, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))
    store.create_execution(JobExecution(job_id=job.id, started_at=NOW))

    assert registry.remove_job(job.id) is True
    assert store.get_job(job.id) is None
    assert not registry.is_active(job.id)
    assert len(store.list_executions(job_id=job.id)) == 1


def test_load_active_jobs_skips_failures():
    _, store, scheduler, registry = _setup()
    good = store.create_job(_job(WEEKLY_FRIDAY))
    interval = store.create_job(_job({"type": "interval", "interval_minutes": 10}))
    broken = store.create_job(_job({"type": "cron", "cron_expression": "99 * * * *"}))
    disabled = store.create_job(_job(WEEKLY_FRIDAY, enabled=False))

    assert registry.load_active_jobs() == 2
    assert registry.active_job_ids == {good.id, interval.id}
    assert not registry.is_active(broken.id)
    assert not registry.is_active(disabled.id)


def test_load_active_jobs_keeps_missed_runs():
    _, store, scheduler, registry = _setup()
    stale = NOW - timedelta(days=3)
    job = store.create_job(_job(WEEKLY_FRIDAY, next_run=stale))
    interval = store.create_job(
        _job({"type": "interval", "interval_minutes": 10}, next_run=stale)
    )
    ran = store.create_job(_job(WEEKLY_FRIDAY, next_run=stale, last_run=stale))

    registry.load_active_jobs()

    weekly = store.get_job(job.id)
    assert weekly.next_run == datetime(2026, 10, 23, 16, 0, tzinfo=UTC)
    assert weekly.missed_run == stale
    restarted = store.get_job(interval.id)
    assert restarted.next_run == NOW + timedelta(minutes=10)
    assert restarted.missed_run == stale
    assert store.get_job(ran.id).missed_run is None
    triggers = [c.kwargs["trigger"] for c in scheduler.add_job.call_args_list]
    assert not any(
        isinstance(t, DateTrigger) and t.run_date <= NOW for t in triggers
    )


@pytest.mark.asyncio
async def test_calendar_job_advances_before_handler_returns():
    release = asyncio.Event()

    async def slow_report(*, owner_id, parameters):
        await release.wait()
        return {"report": "weekly"}

    clock, store, scheduler, registry = _setup(slow_report)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))
    clock.now = datetime(2026, 10, 23, 16, 0, tzinfo=UTC)

    run = asyncio.create_task(registry.fire_job(job_id=job.id))
    await asyncio.sleep(0)

    assert registry.is_running(job.id)
    assert store.get_job(job.id).next_run == datetime(2026, 10, 30, 16, 0, tzinfo=UTC)

    release.set()
    execution = await run
    assert execution.status == ExecutionStatus.COMPLETED
    assert not registry.is_running(job.id)


def test_exhausted_recurring_job_is_deactivated():
    _, store, scheduler, registry = _setup()
    schedule = {**WEEKLY_FRIDAY, "end_date": "2026-10-01T00:00:00Z"}
    job = registry.schedule_job(_job(schedule))
    assert store.get_job(job.id).enabled is False
    assert job.next_run is None
    scheduler.add_job.assert_not_called()


@pytest.mark.asyncio
async def test_fire_weekly_job_completes_and_advances():
    handler = AsyncMock(return_value={"report": "weekly"})
    clock, store, scheduler, registry = _setup(handler)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))
    clock.now = datetime(2026, 10, 23, 16, 0, tzinfo=UTC)

    execution = await registry.fire_job(job_id=job.id)

    assert execution.status == ExecutionStatus.COMPLETED
    executions = store.list_executions(job_id=job.id)
    assert [e.status for e in executions] == [ExecutionStatus.COMPLETED]
    stored = store.get_job(job.id)
    assert stored.last_run == clock.now
    assert stored.next_run == datetime(2026, 10, 30, 16, 0, tzinfo=UTC)
    assert registry.is_active(job.id)


@pytest.mark.asyncio
async def test_fire_one_time_job_deactivates():
    clock, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job({"type": "one_time", "run_at": NOW + timedelta(hours=1)}))
    clock.now = NOW + timedelta(hours=1)

    execution = await registry.fire_job(job_id=job.id)

    assert execution.status == ExecutionStatus.COMPLETED
    stored = store.get_job(job.id)
    assert stored.enabled is False
    assert stored.next_run is None
    assert not registry.is_active(job.id)


@pytest.mark.asyncio
async def test_fire_interval_rearms_from_completion():
    clock, store, scheduler, registry = _setup()
    job = registry.schedule_job(_job({"type": "interval", "interval_minutes": 30}))
    clock.now = NOW + timedelta(minutes=31)

    await registry.fire_job(job_id=job.id)

    expected = clock.now + timedelta(minutes=30)
    assert store.get_job(job.id).next_run == expected
    assert scheduler.add_job.call_args.kwargs["trigger"].run_date == expected
    assert scheduler.add_job.call_count == 2
    assert registry.is_active(job.id)


@pytest.mark.asyncio
async def test_fire_failed_job_still_advances():
    handler = AsyncMock(side_effect=ValueError("template missing"))
    clock, store, scheduler, registry = _setup(handler)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))
    clock.now = datetime(2026, 10, 23, 16, 0, tzinfo=UTC)

    execution = await registry.fire_job(job_id=job.id)

    assert execution.status == ExecutionStatus.FAILED
    assert store.get_job(job.id).next_run == datetime(2026, 10, 30, 16, 0, tzinfo=UTC)
    assert store.get_job(job.id).enabled is True


@pytest.mark.asyncio
async def test_fire_disabled_or_missing_job_is_ignored():
    handler = AsyncMock()
    _, store, _, registry = _setup(handler)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY, enabled=False))

    assert await registry.fire_job(job_id=job.id) is None
    assert await registry.fire_job(job_id="missing") is None
    handler.assert_not_awaited()
    assert store.list_executions() == []


@pytest.mark.asyncio
async def test_reschedule_during_run_keeps_new_timer():
    later = NOW + timedelta(days=1)

    async def reschedule(*, owner_id, parameters):
        registry.update_job_schedule(job.id, {"type": "one_time", "run_at": later})
        return None

    _, store, _, registry = _setup(reschedule)
    job = registry.schedule_job(_job({"type": "one_time", "run_at": NOW}))
    await registry.fire_job(job_id=job.id)

    stored = store.get_job(job.id)
    assert stored.enabled is True
    assert stored.next_run == later
    assert registry.is_active(job.id)


@pytest.mark.asyncio
async def test_overlap_skip():
    gate = asyncio.Event()

    async def slow(*, owner_id, parameters):
        await gate.wait()
        return {"ok": True}

    _, store, _, registry = _setup(slow)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY, overlap_policy="skip"))

    first = asyncio.create_task(registry.fire_job(job_id=job.id))
    await asyncio.sleep(0)
    assert await registry.fire_job(job_id=job.id) is None
    gate.set()

    assert (await first).status == ExecutionStatus.COMPLETED
    assert len(store.list_executions(job_id=job.id)) == 1


@pytest.mark.asyncio
async def test_overlap_queue_runs_one_at_a_time():
    running = 0
    peak = 0

    async def tracked(*, owner_id, parameters):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return None

    _, store, _, registry = _setup(tracked)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY, overlap_policy="queue"))

    results = await asyncio.gather(
        registry.fire_job(job_id=job.id), registry.fire_job(job_id=job.id)
    )

    assert peak == 1
    assert [r.status for r in results] == [ExecutionStatus.COMPLETED] * 2


@pytest.mark.asyncio
async def test_overlap_allow_runs_concurrently():
    running = 0
    peak = 0

    async def tracked(*, owner_id, parameters):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return None

    _, _, _, registry = _setup(tracked)
    job = registry.schedule_job(_job(WEEKLY_FRIDAY))

    await asyncio.gather(registry.fire_job(job_id=job.id), registry.fire_job(job_id=job.id))

    assert peak == 2
