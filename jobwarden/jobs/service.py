"""Public operation surface of the scheduling engine.

Every per-job operation takes the caller's ``owner_id`` and raises
JobNotFoundError when the job is absent or belongs to someone else.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler

from jobwarden.config import Settings
from jobwarden.errors import JobNotFoundError, SchedulerError
from jobwarden.jobs.calculator import validate_schedule
from jobwarden.jobs.executor import Executor
from jobwarden.jobs.handlers import HandlerRegistry
from jobwarden.jobs.models import (
    ActionSpec,
    BulkOperation,
    JobExecution,
    JobFilter,
    JobSchedule,
    JobStatistics,
    JobTemplate,
    OverlapPolicy,
    ScheduledJob,
    SchedulerMetrics,
    parse_action,
    parse_schedule,
    utcnow,
)
from jobwarden.jobs.monitor import Monitor
from jobwarden.jobs.registry import SchedulerRegistry
from jobwarden.jobs.store import JobStore
from jobwarden.jobs.templates import get_template, get_templates
from jobwarden.notify import Notifier

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "schedule",
        "action",
        "enabled",
        "overlap_policy",
        "metadata",
    }
)


class JobService:
    def __init__(
        self,
        *,
        store: JobStore,
        registry: SchedulerRegistry,
        executor: Executor,
        monitor: Monitor,
        scheduler: BaseScheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.executor = executor
        self.monitor = monitor
        self.scheduler = scheduler
        self._clock = clock

    def start(self) -> int:
        """Arm stored jobs, start monitoring and the scheduler.

        Must be called from a running event loop. Returns the number of
        jobs armed.
        """
        count = self.registry.load_active_jobs()
        self.monitor.start(scheduler=self.scheduler)
        self.scheduler.start()
        logger.info(f"Scheduler started with {count} active job(s)")
        return count

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")

    # --- jobs ---

    def create_job(
        self,
        *,
        owner_id: str,
        name: str,
        schedule: JobSchedule | Mapping[str, Any],
        action: ActionSpec | Mapping[str, Any],
        description: str = "",
        enabled: bool = True,
        overlap_policy: OverlapPolicy = OverlapPolicy.ALLOW,
        metadata: Mapping[str, Any] | None = None,
    ) -> ScheduledJob:
        """Create, persist and (if enabled) activate a job."""
        now = self._clock()
        job = ScheduledJob(
            owner_id=owner_id,
            name=name,
            description=description,
            schedule=parse_schedule(data=schedule),
            action=parse_action(data=action),
            enabled=enabled,
            overlap_policy=overlap_policy,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        return self.registry.schedule_job(job)

    def create_from_template(
        self,
        *,
        owner_id: str,
        template_id: str,
        name: str | None = None,
        schedule_overrides: Mapping[str, Any] | None = None,
        action_overrides: Mapping[str, Any] | None = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Instantiate a template, merging overrides over its blueprint.

        A schedule override with a different ``type`` replaces the template
        schedule. Action parameters are merged key by key.
        """
        template = get_template(template_id)

        schedule = dict(template.schedule)
        if schedule_overrides:
            if schedule_overrides.get("type", schedule["type"]) != schedule["type"]:
                schedule = dict(schedule_overrides)
            else:
                schedule.update(schedule_overrides)

        action = dict(template.action)
        if action_overrides:
            parameters = {
                **action.get("parameters", {}),
                **action_overrides.get("parameters", {}),
            }
            action.update(action_overrides)
            action["parameters"] = parameters

        return self.create_job(
            owner_id=owner_id,
            name=name or template.name,
            description=template.description,
            schedule=schedule,
            action=action,
            enabled=enabled,
            metadata={"template_id": template.id},
        )

    def get_owner_jobs(
        self, owner_id: str, *, job_filter: JobFilter | None = None
    ) -> list[ScheduledJob]:
        return self.store.list_jobs(owner_id=owner_id, job_filter=job_filter)

    def get_job(self, job_id: str, *, owner_id: str) -> ScheduledJob:
        job = self.store.get_job(job_id, owner_id=owner_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update_job(
        self, job_id: str, *, owner_id: str, changes: Mapping[str, Any]
    ) -> ScheduledJob:
        """Apply a partial update. Schedule and enabled changes re-arm the timer.

        Every change is validated before any of them is applied.
        """
        job = self.get_job(job_id, owner_id=owner_id)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise SchedulerError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                code="INVALID_UPDATE",
            )

        fields = dict(changes)
        if "schedule" in fields:
            fields["schedule"] = parse_schedule(data=fields["schedule"])
            validate_schedule(schedule=fields["schedule"])
        if "action" in fields:
            fields["action"] = parse_action(data=fields["action"])
        candidate = self.store.preview_update(job_id=job_id, changes=fields)

        plain = {
            name: getattr(candidate, name)
            for name in fields
            if name not in ("schedule", "enabled")
        }
        if "enabled" in fields and not candidate.enabled and job.enabled:
            self.registry.deactivate_job(job_id)
        if plain:
            self.store.update_job(job_id=job_id, changes=plain)
        if "schedule" in fields:
            self.registry.update_job_schedule(job_id, candidate.schedule)
        if "enabled" in fields and candidate.enabled and not job.enabled:
            self.registry.enable_job(job_id)

        logger.info(f"Updated job {job_id}: {', '.join(sorted(changes))}")
        return self.get_job(job_id, owner_id=owner_id)

    def delete_job(self, job_id: str, *, owner_id: str) -> None:
        self.get_job(job_id, owner_id=owner_id)
        self.registry.remove_job(job_id)

    async def execute_job(self, job_id: str, *, owner_id: str) -> JobExecution:
        """Run a job now, outside its schedule. Raises ExecutionError on failure."""
        job = self.get_job(job_id, owner_id=owner_id)
        logger.info(f"Manual run of job {job_id} requested by {owner_id}")
        return await self.executor.execute(job=job, manual=True)

    def bulk_operation(
        self,
        *,
        owner_id: str,
        operation: BulkOperation | str,
        job_ids: Iterable[str],
    ) -> int:
        """Enable, disable or delete several jobs. Returns how many were affected.

        Missing, foreign or failing jobs are logged and skipped.
        """
        operation = BulkOperation(operation)
        affected = 0
        for job_id in job_ids:
            if self.store.get_job(job_id, owner_id=owner_id) is None:
                logger.warning(f"Bulk {operation} skipped unknown job {job_id}")
                continue
            try:
                if operation == BulkOperation.ENABLE:
                    self.registry.enable_job(job_id)
                elif operation == BulkOperation.DISABLE:
                    self.registry.deactivate_job(job_id)
                else:
                    self.registry.remove_job(job_id)
            except SchedulerError as e:
                logger.warning(f"Bulk {operation} failed for job {job_id}: {e}")
                continue
            affected += 1
        logger.info(f"Bulk {operation} affected {affected} job(s) of {owner_id}")
        return affected

    # --- reporting ---

    def get_job_executions(
        self, job_id: str, *, owner_id: str, limit: int = 20
    ) -> list[JobExecution]:
        self.get_job(job_id, owner_id=owner_id)
        return self.store.list_executions(job_id=job_id, limit=limit)

    def get_job_statistics(self, job_id: str, *, owner_id: str) -> JobStatistics:
        self.get_job(job_id, owner_id=owner_id)
        return self.monitor.get_job_statistics(job_id)

    def get_metrics(self) -> SchedulerMetrics:
        return self.monitor.get_metrics()

    def get_templates(self, *, category: str | None = None) -> list[JobTemplate]:
        return get_templates(category=category)


def create_service(
    *,
    settings: Settings,
    handlers: HandlerRegistry,
    notifier: Notifier,
    scheduler: BaseScheduler | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> JobService:
    """Wire store, executor, registry and monitor around one scheduler."""
    scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
    store = JobStore(
        jobs_file=settings.jobs_file,
        executions_file=settings.executions_file,
        clock=clock,
    )
    executor = Executor(
        store=store, handlers=handlers, scheduler=scheduler, clock=clock
    )
    registry = SchedulerRegistry(
        scheduler=scheduler, store=store, executor=executor, clock=clock
    )
    monitor = Monitor(
        store=store,
        registry=registry,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
    return JobService(
        store=store,
        registry=registry,
        executor=executor,
        monitor=monitor,
        scheduler=scheduler,
        clock=clock,
    )
