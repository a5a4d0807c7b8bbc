"""JSON file persistence for jobs and execution records.

Everything lives in memory and is written through to disk on every change.
Passing ``None`` for a file keeps that collection in memory only.
"""

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from jobwarden.errors import InvalidJobError, JobNotFoundError, SchedulerError
from jobwarden.jobs.models import (
    ExecutionStatus,
    JobExecution,
    JobFilter,
    ScheduledJob,
    utcnow,
)

logger = logging.getLogger(__name__)


def _load_records(*, path: Path | None) -> list[dict[str, Any]]:
    """Read a JSON list of records. Returns [] on missing/invalid."""
    if path is None:
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        logger.warning(f"Ignoring {path}: expected a JSON list")
    except FileNotFoundError:
        pass
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to read {path}: {e}")
    return []


def _save_records(*, path: Path | None, records: Iterable[BaseModel]) -> None:
    if path is None:
        return
    payload = [
        record.model_dump(mode="json", exclude_none=True) for record in records
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp.replace(path)


class JobStore:
    def __init__(
        self,
        *,
        jobs_file: Path | None = None,
        executions_file: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs_file = jobs_file
        self._executions_file = executions_file
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._executions: dict[str, JobExecution] = {}
        self._load()

    def _load(self) -> None:
        for raw in _load_records(path=self._jobs_file):
            try:
                job = ScheduledJob.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid job {raw.get('id')!r}: {e}")
                continue
            self._jobs[job.id] = job
        for raw in _load_records(path=self._executions_file):
            try:
                execution = JobExecution.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid execution {raw.get('id')!r}: {e}")
                continue
            self._executions[execution.id] = execution
        if self._jobs or self._executions:
            logger.info(
                f"Loaded {len(self._jobs)} jobs and "
                f"{len(self._executions)} executions"
            )

    def _save_jobs(self) -> None:
        _save_records(path=self._jobs_file, records=self._jobs.values())

    def _save_executions(self) -> None:
        _save_records(path=self._executions_file, records=self._executions.values())

    # --- jobs ---

    def create_job(self, job: ScheduledJob) -> ScheduledJob:
        if job.id in self._jobs:
            raise SchedulerError(f"Job {job.id} already exists", code="DUPLICATE_JOB")
        self._jobs[job.id] = job
        self._save_jobs()
        return job

    def get_job(
        self, job_id: str, *, owner_id: str | None = None
    ) -> ScheduledJob | None:
        """Return a job, or None if missing or owned by someone else."""
        job = self._jobs.get(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            return None
        return job

    def preview_update(self, *, job_id: str, changes: dict[str, Any]) -> ScheduledJob:
        """Return the job as it would look after ``changes``, without saving.

        Raises JobNotFoundError, or InvalidJobError if the result is invalid.
        """
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        data = current.model_dump()
        data.pop("type", None)
        data.update(changes)
        data["id"] = current.id
        data["owner_id"] = current.owner_id
        data["created_at"] = current.created_at
        data["updated_at"] = self._clock()
        try:
            return ScheduledJob.model_validate(data)
        except ValidationError as e:
            raise InvalidJobError(f"Invalid update for job {job_id}: {e}") from e

    def update_job(self, *, job_id: str, changes: dict[str, Any]) -> ScheduledJob:
        """Apply field changes, re-validate and bump ``updated_at``."""
        updated = self.preview_update(job_id=job_id, changes=changes)
        self._jobs[job_id] = updated
        self._save_jobs()
        return updated

    def delete_job(self, job_id: str) -> bool:
        if self._jobs.pop(job_id, None) is None:
            return False
        self._save_jobs()
        return True

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        job_filter: JobFilter | None = None,
    ) -> list[ScheduledJob]:
        """List jobs, newest first."""
        jobs = [
            job
            for job in self._jobs.values()
            if (owner_id is None or job.owner_id == owner_id)
            and (job_filter is None or job_filter.matches(job))
        ]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def list_enabled_jobs(self) -> list[ScheduledJob]:
        return [job for job in self._jobs.values() if job.enabled]

    # --- executions ---

    def create_execution(self, execution: JobExecution) -> JobExecution:
        self._executions[execution.id] = execution
        self._save_executions()
        return execution

    def get_execution(self, execution_id: str) -> JobExecution | None:
        return self._executions.get(execution_id)

    def update_execution(self, execution: JobExecution) -> JobExecution:
        if execution.id not in self._executions:
            raise SchedulerError(
                f"Execution {execution.id} not found", code="EXECUTION_NOT_FOUND"
            )
        self._executions[execution.id] = execution
        self._save_executions()
        return execution

    def list_executions(
        self,
        *,
        job_id: str | None = None,
        status: ExecutionStatus | None = None,
        started_after: datetime | None = None,
        limit: int | None = None,
    ) -> list[JobExecution]:
        """List executions, most recently started first."""
        executions = [
            execution
            for execution in self._executions.values()
            if (job_id is None or execution.job_id == job_id)
            and (status is None or execution.status == status)
            and (started_after is None or execution.started_at >= started_after)
        ]
        executions.sort(key=lambda execution: execution.started_at, reverse=True)
        if limit is not None:
            return executions[:limit]
        return executions
