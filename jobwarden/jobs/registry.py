"""Live mapping of job id to its armed APScheduler job.

The registry is the only place timers are created or cancelled, so each job
id has at most one live timer. It is built once per process by the host.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from jobwarden.errors import (
    ActivationError,
    InvalidScheduleError,
    JobNotFoundError,
    ScheduleValidationError,
)
from jobwarden.jobs.calculator import build_trigger, next_run, validate_schedule
from jobwarden.jobs.executor import Executor
from jobwarden.jobs.models import (
    CronSchedule,
    DelayedSchedule,
    IntervalSchedule,
    JobExecution,
    JobSchedule,
    OneTimeSchedule,
    OverlapPolicy,
    RecurringSchedule,
    ScheduledJob,
    parse_schedule,
    utcnow,
)
from jobwarden.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Concurrent runs of one job are governed by OverlapPolicy, not APScheduler.
_MAX_INSTANCES = 100


class SchedulerRegistry:
    def __init__(
        self,
        *,
        scheduler: BaseScheduler,
        store: JobStore,
        executor: Executor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._executor = executor
        self._clock = clock
        self._timers: dict[str, Job] = {}
        self._in_flight: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def is_active(self, job_id: str) -> bool:
        return job_id in self._timers

    def is_running(self, job_id: str) -> bool:
        """True while a timer-triggered run of the job is in flight."""
        return job_id in self._in_flight

    @property
    def active_job_ids(self) -> set[str]:
        return set(self._timers)

    def _cancel_timer(self, job_id: str) -> bool:
        handle = self._timers.pop(job_id, None)
        if handle is None:
            return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"Timer for job {job_id} already gone from scheduler")
        return True

    def _persist(self, job_id: str, **changes: Any) -> ScheduledJob:
        return self._store.update_job(job_id=job_id, changes=changes)

    # --- activation ---

    def schedule_job(self, job: ScheduledJob) -> ScheduledJob:
        """Validate, persist with a computed next run and activate if enabled.

        Raises a ScheduleValidationError before anything is stored. If
        activation fails the job stays stored but disabled, and
        ActivationError is raised.
        """
        validate_schedule(schedule=job.schedule)
        first_run = next_run(schedule=job.schedule, now=self._clock())
        self._store.create_job(job.model_copy(update={"next_run": first_run}))
        stored = self._require(job.id)
        if stored.enabled:
            self._activate_or_disable(stored)
        logger.info(f"Scheduled {stored.type} job {stored.id} for {stored.owner_id}")
        return self._require(job.id)

    def _require(self, job_id: str) -> ScheduledJob:
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _activate_or_disable(self, job: ScheduledJob) -> None:
        try:
            self.activate_job(job)
        except ActivationError:
            self._persist(job.id, enabled=False)
            raise

    def _move_next_run(
        self, *, job: ScheduledJob, now: datetime, upcoming: datetime
    ) -> None:
        """Persist ``upcoming`` as the next run, keeping a missed one for the monitor.

        A stored next run already in the past that the job never reached is
        not replayed. It is saved as ``missed_run`` instead.
        """
        changes: dict[str, Any] = {"next_run": upcoming}
        stale = job.next_run
        if (
            stale is not None
            and stale < now
            and (job.last_run is None or job.last_run < stale)
        ):
            logger.warning(f"Job {job.id} missed its run at {stale}")
            changes["missed_run"] = stale
        self._persist(job.id, **changes)

    def _arm_time(self, *, job: ScheduledJob, now: datetime) -> datetime:
        """Instant for the next one-shot timer of a non-calendar job."""
        schedule = job.schedule
        if isinstance(schedule, OneTimeSchedule):
            return schedule.run_at
        if isinstance(schedule, DelayedSchedule):
            return job.next_run or now + timedelta(minutes=schedule.delay_minutes)
        if not isinstance(schedule, IntervalSchedule):
            raise InvalidScheduleError(f"Unsupported schedule type {schedule.type}")
        if job.metadata.get("execute_immediately") and job.last_run is None:
            return now
        if job.next_run is not None and job.next_run > now:
            return job.next_run
        fire_at = now + timedelta(minutes=schedule.interval_minutes)
        self._move_next_run(job=job, now=now, upcoming=fire_at)
        return fire_at

    def _arm(
        self, *, job: ScheduledJob, now: datetime, run_at: datetime | None = None
    ) -> None:
        try:
            trigger = build_trigger(schedule=job.schedule, now=now, run_at=run_at)
            handle = self._scheduler.add_job(
                self.fire_job,
                trigger=trigger,
                id=job.id,
                kwargs={"job_id": job.id},
                replace_existing=True,
                misfire_grace_time=None,
                coalesce=True,
                max_instances=_MAX_INSTANCES,
            )
        except Exception as e:
            logger.error(f"Failed to activate job {job.id}: {e}")
            raise ActivationError(f"Failed to activate job {job.id}: {e}") from e
        self._timers[job.id] = handle

    def activate_job(self, job: ScheduledJob) -> None:
        """Arm exactly one timer for ``job``, replacing any existing one.

        A calendar schedule with no occurrence left is deactivated instead.
        Raises ActivationError if the trigger cannot be built or registered.
        """
        self._cancel_timer(job.id)
        now = self._clock()
        if isinstance(job.schedule, (CronSchedule, RecurringSchedule)):
            try:
                upcoming = next_run(schedule=job.schedule, now=now)
            except ScheduleValidationError as e:
                raise ActivationError(f"Failed to activate job {job.id}: {e}") from e
            if upcoming is None:
                logger.info(f"Job {job.id} has no runs left, deactivating")
                self.deactivate_job(job.id)
                return
            if upcoming != job.next_run:
                self._move_next_run(job=job, now=now, upcoming=upcoming)
            self._arm(job=job, now=now)
        else:
            try:
                run_at = self._arm_time(job=job, now=now)
            except ScheduleValidationError as e:
                raise ActivationError(f"Failed to activate job {job.id}: {e}") from e
            self._arm(job=job, now=now, run_at=run_at)
        logger.info(f"Activated {job.type} job {job.id}")

    def deactivate_job(self, job_id: str) -> None:
        """Cancel the job's timer and persist it as disabled. Safe to repeat.

        Runs already in flight are left to finish.
        """
        cancelled = self._cancel_timer(job_id)
        job = self._store.get_job(job_id)
        if job is None:
            logger.warning(f"Deactivate requested for unknown job {job_id}")
            return
        if job.enabled:
            self._persist(job_id, enabled=False)
        if cancelled:
            logger.info(f"Deactivated job {job_id}")

    def enable_job(self, job_id: str) -> ScheduledJob:
        """Persist the job as enabled with a fresh next run and activate it."""
        job = self._require(job_id)
        upcoming = next_run(schedule=job.schedule, now=self._clock())
        job = self._persist(job_id, enabled=True, next_run=upcoming)
        self._activate_or_disable(job)
        return self._require(job_id)

    def update_job_schedule(
        self, job_id: str, schedule: JobSchedule | Mapping[str, Any]
    ) -> ScheduledJob:
        """Swap the schedule of a job, re-arming it only if it is enabled."""
        schedule = parse_schedule(data=schedule)
        validate_schedule(schedule=schedule)
        self._require(job_id)
        self._cancel_timer(job_id)
        upcoming = next_run(schedule=schedule, now=self._clock())
        job = self._persist(job_id, schedule=schedule, next_run=upcoming)
        if job.enabled:
            self._activate_or_disable(job)
        logger.info(f"Updated schedule of job {job_id} to {job.type}")
        return self._require(job_id)

    def remove_job(self, job_id: str) -> bool:
        """Cancel the timer and delete the job. Its executions are kept."""
        self._cancel_timer(job_id)
        deleted = self._store.delete_job(job_id)
        if deleted:
            logger.info(f"Removed job {job_id}")
        return deleted

    def load_active_jobs(self) -> int:
        """Arm every enabled job from the store. Returns the number armed."""
        count = 0
        for job in self._store.list_enabled_jobs():
            try:
                self.activate_job(job)
            except ActivationError as e:
                logger.warning(f"Skipping job {job.id}: {e}")
                continue
            if job.id in self._timers:
                count += 1
        logger.info(f"Loaded {count} active job(s)")
        return count

    # --- firing ---

    async def fire_job(self, *, job_id: str) -> JobExecution | None:
        """Timer callback: run the job and advance its schedule."""
        job = self._store.get_job(job_id)
        if job is None or not job.enabled:
            state = "deleted" if job is None else "disabled"
            logger.warning(f"Timer fired for {state} job {job_id}, ignoring")
            return None

        handle = self._timers.get(job_id)
        self._mark_fired(job=job, handle=handle)
        execution = None
        if (
            job.overlap_policy == OverlapPolicy.SKIP
            and self._in_flight.get(job_id, 0) > 0
        ):
            logger.warning(f"Job {job_id} is still running, skipping this run")
        else:
            execution = await self._run(job)

        self._advance(job_id=job_id, handle=handle)
        return execution

    def _mark_fired(self, *, job: ScheduledJob, handle: Job | None) -> None:
        """Move a calendar job's next run past this fire before it runs."""
        if handle is None or not isinstance(
            job.schedule, (CronSchedule, RecurringSchedule)
        ):
            return
        upcoming = next_run(schedule=job.schedule, now=self._clock())
        if upcoming is not None and upcoming != job.next_run:
            self._persist(job.id, next_run=upcoming)

    async def _run(self, job: ScheduledJob) -> JobExecution | None:
        self._in_flight[job.id] = self._in_flight.get(job.id, 0) + 1
        try:
            if job.overlap_policy == OverlapPolicy.QUEUE:
                lock = self._locks.setdefault(job.id, asyncio.Lock())
                async with lock:
                    return await self._execute(job)
            return await self._execute(job)
        finally:
            self._in_flight[job.id] -= 1
            if not self._in_flight[job.id]:
                del self._in_flight[job.id]

    async def _execute(self, job: ScheduledJob) -> JobExecution | None:
        try:
            return await self._executor.execute(job=job)
        except Exception as e:
            logger.error(f"Unexpected error executing job {job.id}: {e}")
            return None

    def _advance(self, *, job_id: str, handle: Job | None) -> None:
        """Move the job to its next run after a fire.

        Does nothing if the job was rescheduled, disabled or deleted while
        it ran (its timer handle is no longer the one that fired).
        """
        if handle is None or self._timers.get(job_id) is not handle:
            return
        job = self._store.get_job(job_id)
        if job is None:
            self._timers.pop(job_id, None)
            return
        schedule = job.schedule
        now = self._clock()

        if isinstance(schedule, (OneTimeSchedule, DelayedSchedule)):
            self._timers.pop(job_id, None)
            self._persist(job_id, enabled=False, next_run=None)
            logger.info(f"{job.type} job {job_id} done, deactivated")
        elif isinstance(schedule, IntervalSchedule):
            fire_at = now + timedelta(minutes=schedule.interval_minutes)
            job = self._persist(job_id, next_run=fire_at)
            self._timers.pop(job_id, None)
            try:
                self._arm(job=job, now=now, run_at=fire_at)
            except ActivationError:
                self._persist(job_id, enabled=False)
        else:
            upcoming = next_run(schedule=schedule, now=now)
            if upcoming is None:
                logger.info(f"Job {job_id} has no runs left, deactivating")
                self.deactivate_job(job_id)
            else:
                self._persist(job_id, next_run=upcoming)
