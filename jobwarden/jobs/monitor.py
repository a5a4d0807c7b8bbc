"""Periodic health checks over the job store.

The sweep looks for missed runs and chronically failing jobs, the reaper
fails executions stuck in RUNNING. Findings are published as MonitorEvents
to subscribers, and the serious ones are also sent to the job owner.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypedDict

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jobwarden.config import Settings
from jobwarden.errors import JobNotFoundError
from jobwarden.jobs.models import (
    ExecutionStatus,
    JobError,
    JobExecution,
    JobStatistics,
    ScheduledJob,
    SchedulerMetrics,
    UpcomingJob,
    utcnow,
)
from jobwarden.jobs.registry import SchedulerRegistry
from jobwarden.jobs.store import JobStore
from jobwarden.notify import Notification, Notifier

logger = logging.getLogger(__name__)

_TERMINAL = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class MonitorEvent(TypedDict):
    name: str
    job_id: str
    owner_id: str
    detail: dict[str, Any]


MonitorListener = Callable[[MonitorEvent], None]


def _average_duration(executions: list[JobExecution]) -> float:
    durations = [e.duration_ms for e in executions if e.duration_ms is not None]
    return sum(durations) / len(durations) if durations else 0.0


def _missed_at(job: ScheduledJob, *, now: datetime) -> datetime | None:
    """The run instant the job missed, if any."""
    for instant in (job.missed_run, job.next_run):
        if (
            instant is not None
            and instant < now
            and (job.last_run is None or job.last_run < instant)
        ):
            return instant
    return None


class Monitor:
    def __init__(
        self,
        *,
        store: JobStore,
        registry: SchedulerRegistry,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._notifier = notifier
        self._settings = settings
        self._clock = clock
        self._listeners: list[MonitorListener] = []
        self._metrics: SchedulerMetrics | None = None

    def start(self, *, scheduler: BaseScheduler) -> None:
        """Register the sweep and the reaper as recurring scheduler jobs."""
        scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self._settings.monitor_interval_seconds),
            id="monitor-sweep",
            replace_existing=True,
            coalesce=True,
        )
        scheduler.add_job(
            self.reap_stuck_executions,
            trigger=IntervalTrigger(seconds=self._settings.reaper_interval_seconds),
            id="monitor-reaper",
            replace_existing=True,
            coalesce=True,
        )
        logger.info(
            f"Monitor started: sweep every {self._settings.monitor_interval_seconds}s, "
            f"reaper every {self._settings.reaper_interval_seconds}s"
        )

    def subscribe(self, listener: MonitorListener) -> None:
        self._listeners.append(listener)

    def _emit(
        self, name: str, job: ScheduledJob, detail: dict[str, Any] | None = None
    ) -> None:
        event: MonitorEvent = {
            "name": name,
            "job_id": job.id,
            "owner_id": job.owner_id,
            "detail": detail or {},
        }
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Monitor listener failed on {name}: {e}")

    async def _notify(self, job: ScheduledJob, notification: Notification) -> None:
        try:
            await self._notifier.notify_owner(
                owner_id=job.owner_id, notification=notification
            )
        except Exception as e:
            logger.error(f"Failed to notify {job.owner_id} about job {job.id}: {e}")

    # --- sweeps ---

    async def sweep(self) -> None:
        """One monitoring pass: missed runs, chronic failures, fresh metrics."""
        now = self._clock()
        for job in self.find_missed_jobs():
            missed_at = _missed_at(job, now=now)
            logger.warning(f"Job {job.id} missed its run at {missed_at}")
            self._emit(
                "job.missed",
                job,
                {"missed_run": missed_at.isoformat() if missed_at else None},
            )
            if job.missed_run is not None:
                self._store.update_job(job_id=job.id, changes={"missed_run": None})
        await self.check_failures()
        self.refresh_metrics()

    def find_missed_jobs(self) -> list[ScheduledJob]:
        """Enabled jobs whose next run is past and has not happened.

        Includes runs missed while the process was down, recorded at startup,
        until a sweep has reported them. Jobs running right now are skipped.
        """
        now = self._clock()
        return [
            job
            for job in self._store.list_enabled_jobs()
            if _missed_at(job, now=now) is not None
            and not self._registry.is_running(job.id)
        ]

    async def check_failures(self) -> None:
        """Flag jobs failing often in the trailing window, disable the worst."""
        since = self._clock() - timedelta(hours=self._settings.failure_window_hours)
        counts: dict[str, int] = {}
        for execution in self._store.list_executions(
            status=ExecutionStatus.FAILED, started_after=since
        ):
            counts[execution.job_id] = counts.get(execution.job_id, 0) + 1

        for job_id, failures in counts.items():
            job = self._store.get_job(job_id)
            if job is None or not job.enabled:
                continue
            if failures > self._settings.disable_failure_threshold:
                logger.error(f"Disabling job {job_id} after {failures} failures")
                self._registry.deactivate_job(job_id)
                self._emit("job.disabled", job, {"failures": failures})
                await self._notify(
                    job,
                    {
                        "type": "job_disabled",
                        "title": "Scheduled job disabled",
                        "message": (
                            f'"{job.name}" failed {failures} times in the last '
                            f"{self._settings.failure_window_hours} hours and "
                            "has been disabled."
                        ),
                    },
                )
            elif failures > self._settings.unhealthy_failure_threshold:
                logger.warning(f"Job {job_id} is unhealthy: {failures} failures")
                self._emit("job.unhealthy", job, {"failures": failures})
                await self._notify(
                    job,
                    {
                        "type": "job_unhealthy",
                        "title": "Scheduled job is failing",
                        "message": (
                            f'"{job.name}" failed {failures} times in the last '
                            f"{self._settings.failure_window_hours} hours."
                        ),
                    },
                )

    async def reap_stuck_executions(self) -> int:
        """Fail executions that have been RUNNING longer than the timeout."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.stuck_execution_timeout_seconds)
        reaped = 0
        for execution in self._store.list_executions(status=ExecutionStatus.RUNNING):
            if execution.started_at >= cutoff:
                continue
            self._store.update_execution(
                execution.model_copy(
                    update={
                        "status": ExecutionStatus.FAILED,
                        "completed_at": now,
                        "duration_ms": (now - execution.started_at).total_seconds()
                        * 1000,
                        "error": JobError(
                            code="EXECUTION_TIMEOUT",
                            message="Execution exceeded the running time limit",
                        ),
                    }
                )
            )
            logger.warning(
                f"Execution {execution.id} of job {execution.job_id} timed out"
            )
            reaped += 1
        if reaped:
            logger.info(f"Reaped {reaped} stuck execution(s)")
        return reaped

    async def check_job_performance(self, job_id: str) -> None:
        """Warn about a job with a high failure rate or slow average runs."""
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        executions = [
            e
            for e in self._store.list_executions(job_id=job_id)
            if e.status in _TERMINAL
        ]
        failed = sum(1 for e in executions if e.status == ExecutionStatus.FAILED)
        if len(executions) > 10 and failed / len(executions) > 0.2:
            rate = failed / len(executions)
            logger.warning(f"Job {job_id} has a {rate:.0%} failure rate")
            self._emit("job.unhealthy", job, {"failure_rate": rate})
            await self._notify(
                job,
                {
                    "type": "job_unhealthy",
                    "title": "Scheduled job is failing",
                    "message": f'"{job.name}" fails {rate:.0%} of its runs.',
                },
            )
        average = _average_duration(executions)
        if average > self._settings.slow_job_threshold_ms:
            logger.warning(f"Job {job_id} is slow: {average:.0f}ms on average")

    # --- reporting ---

    def refresh_metrics(self) -> SchedulerMetrics:
        now = self._clock()
        jobs = self._store.list_jobs()
        active = [job for job in jobs if job.enabled]
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = self._store.list_executions(started_after=start_of_day)
        finished = [e for e in today if e.status in _TERMINAL]
        succeeded = sum(1 for e in finished if e.status == ExecutionStatus.COMPLETED)
        success_rate = succeeded / len(finished) if finished else 0.0
        upcoming = sorted(
            (job for job in active if job.next_run is not None and job.next_run >= now),
            key=lambda job: job.next_run,
        )[: self._settings.upcoming_jobs_limit]

        self._metrics = SchedulerMetrics(
            total_jobs=len(jobs),
            active_jobs=len(active),
            paused_jobs=len(jobs) - len(active),
            executions_today=len(today),
            success_rate=success_rate,
            failure_rate=(1 - success_rate) if finished else 0.0,
            average_execution_time_ms=_average_duration(finished),
            upcoming_jobs=[
                UpcomingJob(
                    job_id=job.id,
                    job_name=job.name,
                    next_run=job.next_run,
                    type=job.type,
                )
                for job in upcoming
            ],
            generated_at=now,
        )
        return self._metrics

    def get_metrics(self) -> SchedulerMetrics:
        """Cached metrics, recomputed once older than the configured TTL."""
        if self._metrics is not None:
            age = (self._clock() - self._metrics.generated_at).total_seconds()
            if age < self._settings.metrics_ttl_seconds:
                return self._metrics
        return self.refresh_metrics()

    def get_job_statistics(self, job_id: str) -> JobStatistics:
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        executions = self._store.list_executions(job_id=job_id)
        return JobStatistics(
            job_id=job_id,
            total_executions=len(executions),
            successful_executions=sum(
                1 for e in executions if e.status == ExecutionStatus.COMPLETED
            ),
            failed_executions=sum(
                1 for e in executions if e.status == ExecutionStatus.FAILED
            ),
            average_duration_ms=_average_duration(executions),
            last_execution=executions[0].started_at if executions else None,
            next_execution=job.next_run if job.enabled else None,
        )
