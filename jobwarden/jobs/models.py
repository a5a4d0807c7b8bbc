"""Job, schedule and execution records.

Schedules are a discriminated union on ``type``: each kind is its own model
and unknown fields are rejected, so a CRON schedule without an expression
(or with a ``run_at``) cannot be built.
"""

import re
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from jobwarden.errors import InvalidActionError, InvalidScheduleError

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class JobType(StrEnum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"
    CRON = "cron"
    INTERVAL = "interval"
    DELAYED = "delayed"


class Frequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ActionType(StrEnum):
    TASK_CREATE = "task_create"
    TASK_UPDATE = "task_update"
    EMAIL_SEND = "email_send"
    NOTIFICATION_SEND = "notification_send"
    REPORT_GENERATE = "report_generate"
    DATA_CLEANUP = "data_cleanup"
    SYNC_INTEGRATION = "sync_integration"
    WEBHOOK_CALL = "webhook_call"
    WORKFLOW_TRIGGER = "workflow_trigger"
    CUSTOM_FUNCTION = "custom_function"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class OverlapPolicy(StrEnum):
    """What to do when a job fires while its previous run is still in flight."""

    ALLOW = "allow"
    SKIP = "skip"
    QUEUE = "queue"


class BulkOperation(StrEnum):
    ENABLE = "enable"
    DISABLE = "disable"
    DELETE = "delete"


# --- schedules ---


class _Schedule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OneTimeSchedule(_Schedule):
    type: Literal["one_time"] = "one_time"
    run_at: AwareDatetime


class CronSchedule(_Schedule):
    type: Literal["cron"] = "cron"
    cron_expression: str = Field(min_length=1)
    timezone: str | None = None


class RecurringSchedule(_Schedule):
    type: Literal["recurring"] = "recurring"
    frequency: Frequency
    time: str
    days_of_week: list[Annotated[int, Field(ge=0, le=6)]] | None = None
    days_of_month: list[Annotated[int, Field(ge=1, le=31)]] | None = None
    timezone: str | None = None
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _TIME_PATTERN.match(value):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_day_lists(self) -> "RecurringSchedule":
        if self.days_of_week is not None and self.frequency != Frequency.WEEKLY:
            raise ValueError("days_of_week only applies to weekly schedules")
        if self.days_of_month is not None and self.frequency != Frequency.MONTHLY:
            raise ValueError("days_of_month only applies to monthly schedules")
        return self

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class IntervalSchedule(_Schedule):
    type: Literal["interval"] = "interval"
    interval_minutes: int = Field(gt=0)


class DelayedSchedule(_Schedule):
    type: Literal["delayed"] = "delayed"
    delay_minutes: int = Field(gt=0)


JobSchedule = Annotated[
    OneTimeSchedule
    | CronSchedule
    | RecurringSchedule
    | IntervalSchedule
    | DelayedSchedule,
    Field(discriminator="type"),
]

_SCHEDULE_ADAPTER: TypeAdapter[JobSchedule] = TypeAdapter(JobSchedule)


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse_schedule(*, data: Mapping[str, Any] | str | _Schedule) -> JobSchedule:
    """Build a typed schedule from a mapping or JSON text.

    Raises InvalidScheduleError on missing, unknown or mistyped fields.
    """
    if isinstance(data, _Schedule):
        return data
    try:
        if isinstance(data, str):
            return _SCHEDULE_ADAPTER.validate_json(data)
        if isinstance(data, Mapping):
            data = dict(data)
        return _SCHEDULE_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise InvalidScheduleError(f"Invalid schedule: {_describe(e)}") from e


def serialize_schedule(*, schedule: JobSchedule) -> dict[str, Any]:
    """Return the canonical JSON-compatible form of a schedule."""
    return _SCHEDULE_ADAPTER.dump_python(schedule, mode="json", exclude_none=True)


# --- actions ---


class RetryPolicy(BaseModel):
    max_retries: int = Field(ge=0)
    retry_delay_ms: int = Field(ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    max_retry_delay_ms: int | None = Field(default=None, ge=0)

    def delay_for(self, *, retry_count: int) -> float:
        """Backoff delay in milliseconds before retry number ``retry_count + 1``."""
        delay = self.retry_delay_ms * self.backoff_multiplier**retry_count
        if self.max_retry_delay_ms is not None:
            delay = min(delay, self.max_retry_delay_ms)
        return delay


class ActionSpec(BaseModel):
    type: ActionType
    target: str = "default"
    method: str = "execute"
    parameters: dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy | None = None


def parse_action(*, data: Mapping[str, Any] | ActionSpec) -> ActionSpec:
    """Build an ActionSpec from a mapping. Raises InvalidActionError."""
    if isinstance(data, ActionSpec):
        return data
    try:
        if isinstance(data, Mapping):
            data = dict(data)
        return ActionSpec.model_validate(data)
    except ValidationError as e:
        raise InvalidActionError(f"Invalid action: {_describe(e)}") from e


# --- jobs and executions ---


class ScheduledJob(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    description: str = ""
    schedule: JobSchedule
    action: ActionSpec
    enabled: bool = True
    overlap_policy: OverlapPolicy = OverlapPolicy.ALLOW
    last_run: AwareDatetime | None = None
    next_run: AwareDatetime | None = None
    # A stored next run that passed while the process was down, kept for the
    # monitor after next_run moves forward.
    missed_run: AwareDatetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: AwareDatetime = Field(default_factory=utcnow)
    updated_at: AwareDatetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def type(self) -> JobType:
        return JobType(self.schedule.type)


class JobError(BaseModel):
    code: str
    message: str
    retryable: bool = False


class JobExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: AwareDatetime
    completed_at: AwareDatetime | None = None
    duration_ms: float | None = None
    result: dict[str, Any] | None = None
    error: JobError | None = None
    retry_count: int = Field(default=0, ge=0)


_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.RETRYING,
        }
    ),
    ExecutionStatus.RETRYING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


def can_transition(*, current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Check if an execution may move from ``current`` to ``target``."""
    return target in _TRANSITIONS[current]


# --- catalog, queries, reporting ---


class JobTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: str
    schedule: dict[str, Any]
    action: dict[str, Any]
    popularity: int = 0
    tags: tuple[str, ...] = ()


class JobFilter(BaseModel):
    type: JobType | None = None
    enabled: bool | None = None
    action_type: ActionType | None = None
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None

    def matches(self, job: ScheduledJob) -> bool:
        if self.type is not None and job.type != self.type:
            return False
        if self.enabled is not None and job.enabled != self.enabled:
            return False
        if self.action_type is not None and job.action.type != self.action_type:
            return False
        if self.start_date is not None and job.created_at < self.start_date:
            return False
        if self.end_date is not None and job.created_at > self.end_date:
            return False
        return True


class UpcomingJob(BaseModel):
    job_id: str
    job_name: str
    next_run: AwareDatetime
    type: JobType


class SchedulerMetrics(BaseModel):
    total_jobs: int
    active_jobs: int
    paused_jobs: int
    executions_today: int
    success_rate: float
    failure_rate: float
    average_execution_time_ms: float
    upcoming_jobs: list[UpcomingJob]
    generated_at: AwareDatetime


class JobStatistics(BaseModel):
    job_id: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_duration_ms: float
    last_execution: AwareDatetime | None = None
    next_execution: AwareDatetime | None = None
