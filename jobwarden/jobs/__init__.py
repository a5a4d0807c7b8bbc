from jobwarden.jobs.calculator import build_trigger, next_run, validate_schedule
from jobwarden.jobs.executor import Executor
from jobwarden.jobs.handlers import (
    ActionHandler,
    HandlerRegistry,
    default_handler_registry,
    is_retryable_error,
)
from jobwarden.jobs.models import (
    ActionSpec,
    ActionType,
    BulkOperation,
    ExecutionStatus,
    JobExecution,
    JobFilter,
    JobSchedule,
    JobType,
    OverlapPolicy,
    RetryPolicy,
    ScheduledJob,
    parse_schedule,
    serialize_schedule,
)
from jobwarden.jobs.monitor import Monitor, MonitorEvent
from jobwarden.jobs.registry import SchedulerRegistry
from jobwarden.jobs.service import JobService, create_service
from jobwarden.jobs.store import JobStore

__all__ = [
    "ActionHandler",
    "ActionSpec",
    "ActionType",
    "BulkOperation",
    "ExecutionStatus",
    "Executor",
    "HandlerRegistry",
    "JobExecution",
    "JobFilter",
    "JobSchedule",
    "JobService",
    "JobStore",
    "JobType",
    "Monitor",
    "MonitorEvent",
    "OverlapPolicy",
    "RetryPolicy",
    "ScheduledJob",
    "SchedulerRegistry",
    "build_trigger",
    "create_service",
    "default_handler_registry",
    "is_retryable_error",
    "next_run",
    "parse_schedule",
    "serialize_schedule",
    "validate_schedule",
]
