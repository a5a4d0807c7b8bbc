"""Next-run computation and trigger construction for every schedule kind.

Calendar schedules (CRON and RECURRING) are evaluated with APScheduler's
CronTrigger in the schedule's own timezone, so DST transitions follow the
tz database. Note that when both day-of-month and day-of-week are
restricted, APScheduler requires both to match.
"""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from jobwarden.errors import (
    InvalidCronExpressionError,
    InvalidDateRangeError,
    InvalidScheduleError,
)
from jobwarden.jobs.models import (
    CronSchedule,
    DelayedSchedule,
    Frequency,
    IntervalSchedule,
    JobSchedule,
    OneTimeSchedule,
    RecurringSchedule,
)
from jobwarden.timezone import get_zoneinfo

logger = logging.getLogger(__name__)

# Crontab numbers weekdays from Sunday, APScheduler from Monday. Names are
# unambiguous in both, so day-of-week fields are rewritten as names.
_CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _day_number(token: str) -> int:
    token = token.strip().lower()
    if token in _CRON_DAY_NAMES:
        return _CRON_DAY_NAMES.index(token)
    value = int(token)
    if not 0 <= value <= 7:
        raise ValueError(f"Day of week out of range: {token}")
    return value


def _translate_day_of_week(*, field: str) -> str:
    """Rewrite a crontab day-of-week field as APScheduler day names."""
    if field in ("*", "?"):
        return "*"
    days: set[int] = set()
    for part in field.split(","):
        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"Invalid step in day of week: {part}")
        if span == "*":
            start, end = 0, 6
        elif "-" in span:
            low, high = span.split("-", 1)
            start, end = _day_number(low), _day_number(high)
            if end == 0 and start > 0:
                end = 7
            if start > end:
                raise ValueError(f"Invalid day of week range: {span}")
        else:
            start = _day_number(span)
            end = 6 if step_text else start
        days.update(day % 7 for day in range(start, end + 1, step))
    return ",".join(_CRON_DAY_NAMES[day] for day in sorted(days))


def cron_trigger(
    *,
    expression: str,
    timezone: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> CronTrigger:
    """Build a CronTrigger from a standard 5-field crontab expression.

    Raises InvalidCronExpressionError for malformed expressions and
    InvalidTimezoneError for unknown zones.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronExpressionError(
            f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}"
        )
    tz = get_zoneinfo(timezone=timezone)
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(field=day_of_week),
            timezone=tz,
            start_date=start_date,
            end_date=end_date,
        )
    except (ValueError, KeyError) as e:
        raise InvalidCronExpressionError(
            f"Invalid cron expression {expression!r}: {e}"
        ) from e


def build_cron_expression(*, schedule: RecurringSchedule) -> str:
    """Translate a RECURRING schedule to an equivalent 5-field cron expression."""
    m, h = schedule.minute, schedule.hour
    if schedule.frequency == Frequency.DAILY:
        return f"{m} {h} * * *"
    if schedule.frequency == Frequency.WEEKLY:
        days = sorted(set(schedule.days_of_week or [1]))
        return f"{m} {h} * * {','.join(str(d) for d in days)}"
    if schedule.frequency == Frequency.MONTHLY:
        days = sorted(set(schedule.days_of_month or [1]))
        return f"{m} {h} {','.join(str(d) for d in days)} * *"
    return f"{m} {h} 1 1 *"


def _calendar_trigger(*, schedule: CronSchedule | RecurringSchedule) -> CronTrigger:
    if isinstance(schedule, CronSchedule):
        return cron_trigger(
            expression=schedule.cron_expression, timezone=schedule.timezone
        )
    return cron_trigger(
        expression=build_cron_expression(schedule=schedule),
        timezone=schedule.timezone,
        start_date=schedule.start_date,
        end_date=schedule.end_date,
    )


def validate_schedule(*, schedule: JobSchedule) -> None:
    """Check the parts of a schedule that field validation cannot.

    Raises InvalidCronExpressionError, InvalidTimezoneError or
    InvalidDateRangeError.
    """
    if isinstance(schedule, RecurringSchedule):
        if (
            schedule.start_date is not None
            and schedule.end_date is not None
            and schedule.start_date >= schedule.end_date
        ):
            raise InvalidDateRangeError(
                f"start_date {schedule.start_date.isoformat()} must be before "
                f"end_date {schedule.end_date.isoformat()}"
            )
    if isinstance(schedule, (CronSchedule, RecurringSchedule)):
        _calendar_trigger(schedule=schedule)


def next_run(*, schedule: JobSchedule, now: datetime) -> datetime | None:
    """Compute the next fire time strictly after ``now``.

    ONE_TIME returns its ``run_at`` even when already past. Returns None
    when a recurring schedule has no occurrence left before its end_date.
    """
    if isinstance(schedule, OneTimeSchedule):
        return schedule.run_at
    if isinstance(schedule, IntervalSchedule):
        return now + timedelta(minutes=schedule.interval_minutes)
    if isinstance(schedule, DelayedSchedule):
        return now + timedelta(minutes=schedule.delay_minutes)
    trigger = _calendar_trigger(schedule=schedule)
    fire_time = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire_time is None:
        return None
    return fire_time.astimezone(UTC)


def build_trigger(
    *,
    schedule: JobSchedule,
    now: datetime,
    run_at: datetime | None = None,
) -> BaseTrigger:
    """Return the APScheduler trigger that arms one timer for ``schedule``.

    Calendar schedules get a CronTrigger. Every other kind gets a one-shot
    DateTrigger at ``run_at`` (or the computed next run), clamped to ``now``
    so an instant already past fires immediately.
    """
    if isinstance(schedule, (CronSchedule, RecurringSchedule)):
        return _calendar_trigger(schedule=schedule)
    fire_at = run_at or next_run(schedule=schedule, now=now)
    if fire_at is None:
        raise InvalidScheduleError(f"No run time left for {schedule.type} schedule")
    return DateTrigger(run_date=max(fire_at, now))
