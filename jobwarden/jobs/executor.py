import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

from jobwarden.errors import ExecutionError, JobNotFoundError
from jobwarden.jobs.handlers import HandlerRegistry, error_code, is_retryable_error
from jobwarden.jobs.models import (
    ExecutionStatus,
    JobError,
    JobExecution,
    ScheduledJob,
    can_transition,
    utcnow,
)
from jobwarden.jobs.store import JobStore

logger = logging.getLogger(__name__)


def _wrap_result(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    if isinstance(result, Mapping):
        return dict(result)
    return {"value": result}


class Executor:
    """Runs fired jobs through their action handler and records the outcome.

    Every attempt gets its own JobExecution. A retryable failure leaves the
    attempt in RETRYING and arms a one-shot APScheduler job that runs the
    next attempt with ``retry_count + 1`` after the policy's backoff delay.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        handlers: HandlerRegistry,
        scheduler: BaseScheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._scheduler = scheduler
        self._clock = clock

    def _transition(
        self, execution: JobExecution, status: ExecutionStatus, **changes: Any
    ) -> JobExecution:
        if not can_transition(current=execution.status, target=status):
            raise ValueError(
                f"Illegal execution transition {execution.status} -> {status}"
            )
        updated = execution.model_copy(update={"status": status, **changes})
        return self._store.update_execution(updated)

    def _elapsed_ms(self, started_at: datetime) -> tuple[datetime, float]:
        finished = self._clock()
        return finished, (finished - started_at).total_seconds() * 1000

    async def execute(
        self,
        *,
        job: ScheduledJob,
        retry_count: int = 0,
        manual: bool = False,
    ) -> JobExecution:
        """Run one attempt of ``job``.

        Failures are recorded on the returned execution. With ``manual=True``
        a failed attempt also raises ExecutionError carrying the execution.
        """
        started_at = self._clock()
        execution = self._store.create_execution(
            JobExecution(job_id=job.id, started_at=started_at, retry_count=retry_count)
        )
        execution = self._transition(execution, ExecutionStatus.RUNNING)
        logger.info(
            f"Executing job {job.id} ({job.action.type}), attempt {retry_count + 1}"
        )

        try:
            handler = self._handlers.resolve(job.action.type)
            result = await handler(
                owner_id=job.owner_id, parameters=dict(job.action.parameters)
            )
        except Exception as e:
            return self._record_failure(
                job=job, execution=execution, error=e, manual=manual
            )

        completed_at, duration_ms = self._elapsed_ms(started_at)
        execution = self._transition(
            execution,
            ExecutionStatus.COMPLETED,
            completed_at=completed_at,
            duration_ms=duration_ms,
            result=_wrap_result(result),
        )
        try:
            self._store.update_job(job_id=job.id, changes={"last_run": started_at})
        except JobNotFoundError:
            logger.warning(f"Job {job.id} was deleted while executing")
        logger.info(f"Job {job.id} completed in {duration_ms:.0f}ms")
        return execution

    def _record_failure(
        self,
        *,
        job: ScheduledJob,
        execution: JobExecution,
        error: Exception,
        manual: bool,
    ) -> JobExecution:
        retryable = is_retryable_error(error=error)
        job_error = JobError(
            code=error_code(error=error),
            message=str(error) or type(error).__name__,
            retryable=retryable,
        )
        completed_at, duration_ms = self._elapsed_ms(execution.started_at)
        policy = job.action.retry_policy

        if (
            retryable
            and policy is not None
            and execution.retry_count < policy.max_retries
        ):
            execution = self._transition(
                execution,
                ExecutionStatus.RETRYING,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error=job_error,
            )
            delay_ms = policy.delay_for(retry_count=execution.retry_count)
            self._schedule_retry(
                job_id=job.id,
                execution_id=execution.id,
                retry_count=execution.retry_count + 1,
                delay_ms=delay_ms,
            )
            logger.warning(
                f"Job {job.id} failed with {job_error.code}, "
                f"retry {execution.retry_count + 1}/{policy.max_retries} "
                f"in {delay_ms:.0f}ms"
            )
        else:
            execution = self._transition(
                execution,
                ExecutionStatus.FAILED,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error=job_error,
            )
            logger.error(
                f"Job {job.id} failed with {job_error.code}: {job_error.message}"
            )

        if manual:
            raise ExecutionError(
                job_error.message,
                code=job_error.code,
                retryable=retryable,
                execution=execution,
            ) from error
        return execution

    def _schedule_retry(
        self, *, job_id: str, execution_id: str, retry_count: int, delay_ms: float
    ) -> None:
        """Arm a one-shot retry. The id is unique per failed execution."""
        run_date = self._clock() + timedelta(milliseconds=delay_ms)
        self._scheduler.add_job(
            self.run_retry,
            trigger=DateTrigger(run_date=run_date),
            id=f"retry-{job_id}-{execution_id}-{retry_count}",
            kwargs={"job_id": job_id, "retry_count": retry_count},
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def run_retry(self, *, job_id: str, retry_count: int) -> JobExecution | None:
        """Run a deferred retry attempt. Skipped if the job has been deleted."""
        job = self._store.get_job(job_id)
        if job is None:
            logger.warning(f"Dropping retry {retry_count} for deleted job {job_id}")
            return None
        return await self.execute(job=job, retry_count=retry_count)
