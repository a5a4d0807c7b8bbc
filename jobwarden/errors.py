"""Error taxonomy for the scheduling engine.

Every error carries a stable ``code`` so callers can branch on it without
parsing messages.
"""

from typing import Any


class SchedulerError(Exception):
    code = "SCHEDULER_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ScheduleValidationError(SchedulerError):
    """Bad or missing schedule fields. Raised synchronously, never retried."""

    code = "INVALID_SCHEDULE"


class InvalidScheduleError(ScheduleValidationError):
    code = "INVALID_SCHEDULE"


class InvalidTimezoneError(InvalidScheduleError):
    code = "INVALID_TIMEZONE"


class InvalidCronExpressionError(ScheduleValidationError):
    code = "INVALID_CRON_EXPRESSION"


class InvalidDateRangeError(ScheduleValidationError):
    code = "INVALID_DATE_RANGE"


class InvalidActionError(SchedulerError):
    code = "INVALID_ACTION"


class InvalidJobError(SchedulerError):
    """A job field change failed validation. Nothing is saved."""

    code = "INVALID_JOB"


class ActivationError(SchedulerError):
    """Timer registration failed. The job stays persisted but disabled."""

    code = "JOB_ACTIVATION_FAILED"


class JobNotFoundError(SchedulerError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class TemplateNotFoundError(SchedulerError):
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Template {template_id} not found")
        self.template_id = template_id


class ExecutionError(SchedulerError):
    """A job action failed. ``execution`` is the recorded JobExecution, if any."""

    code = "EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
        execution: Any = None,
    ) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable
        self.execution = execution


class UnknownActionError(ExecutionError):
    code = "UNKNOWN_ACTION"


class ActionError(SchedulerError):
    """Raised by action handlers to report a failure code or HTTP status."""

    code = "ACTION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code
