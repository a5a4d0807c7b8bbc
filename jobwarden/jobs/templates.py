"""Built-in job blueprints."""

from jobwarden.errors import TemplateNotFoundError
from jobwarden.jobs.models import JobTemplate

TEMPLATES: tuple[JobTemplate, ...] = (
    JobTemplate(
        id="daily-summary",
        name="Daily Summary",
        description="Send a summary of the day's activity every evening",
        category="notifications",
        schedule={
            "type": "recurring",
            "frequency": "daily",
            "time": "18:00",
        },
        action={
            "type": "email_send",
            "target": "email",
            "method": "send_daily_summary",
            "parameters": {"template": "daily_summary"},
        },
        popularity=85,
        tags=("summary", "daily", "email"),
    ),
    JobTemplate(
        id="weekly-review",
        name="Weekly Review",
        description="Generate a weekly review report every Friday afternoon",
        category="analytics",
        schedule={
            "type": "recurring",
            "frequency": "weekly",
            "time": "16:00",
            "days_of_week": [5],
        },
        action={
            "type": "report_generate",
            "target": "reports",
            "method": "generate",
            "parameters": {
                "reportType": "weekly_review",
                "format": "pdf",
                "emailTo": "owner",
            },
        },
        popularity=72,
        tags=("review", "weekly", "report"),
    ),
    JobTemplate(
        id="task-cleanup",
        name="Task Cleanup",
        description="Archive completed tasks on the first of every month",
        category="maintenance",
        schedule={
            "type": "recurring",
            "frequency": "monthly",
            "time": "02:00",
            "days_of_month": [1],
        },
        action={
            "type": "data_cleanup",
            "target": "tasks",
            "method": "archive_completed",
            "parameters": {"olderThanDays": 30},
        },
        popularity=45,
        tags=("cleanup", "monthly", "tasks"),
    ),
    JobTemplate(
        id="integration-sync",
        name="Integration Sync",
        description="Sync connected integrations every 30 minutes",
        category="integrations",
        schedule={"type": "interval", "interval_minutes": 30},
        action={
            "type": "sync_integration",
            "target": "integrations",
            "method": "sync_all",
            "parameters": {},
            "retry_policy": {
                "max_retries": 3,
                "retry_delay_ms": 60_000,
                "backoff_multiplier": 2.0,
            },
        },
        popularity=68,
        tags=("sync", "integrations"),
    ),
    JobTemplate(
        id="reminder-digest",
        name="Reminder Digest",
        description="Morning digest of today's reminders and due tasks",
        category="notifications",
        schedule={
            "type": "recurring",
            "frequency": "daily",
            "time": "08:00",
        },
        action={
            "type": "notification_send",
            "target": "notifications",
            "method": "send_digest",
            "parameters": {"type": "reminder_digest", "title": "Today's reminders"},
        },
        popularity=90,
        tags=("reminders", "daily", "digest"),
    ),
)


def get_templates(*, category: str | None = None) -> list[JobTemplate]:
    """Templates, most popular first, optionally limited to one category."""
    templates = [t for t in TEMPLATES if category is None or t.category == category]
    return sorted(templates, key=lambda t: t.popularity, reverse=True)


def get_template(template_id: str) -> JobTemplate:
    for template in TEMPLATES:
        if template.id == template_id:
            return template
    raise TemplateNotFoundError(template_id)
