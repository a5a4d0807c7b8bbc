from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    data_dir: Path = Path.home() / ".jobwarden"
    telegram_bot_token: str | None = None
    monitor_interval_seconds: int = 300
    reaper_interval_seconds: int = 3600
    stuck_execution_timeout_seconds: int = 3600
    failure_window_hours: int = 24
    unhealthy_failure_threshold: int = 3
    disable_failure_threshold: int = 5
    metrics_ttl_seconds: int = 300
    upcoming_jobs_limit: int = 10
    slow_job_threshold_ms: int = 300_000

    def __str__(self) -> str:
        fields = {
            k: "xxx" if k == "telegram_bot_token" and v else v
            for k, v in self.model_dump().items()
        }
        return f"Settings({', '.join(f'{k}={v!r}' for k, v in fields.items())})"

    @property
    def jobs_file(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def executions_file(self) -> Path:
        return self.data_dir / "executions.json"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "scheduler.lock"


def ensure_dirs(*, settings: Settings) -> None:
    """Create data_dir if it doesn't exist."""
    settings.data_dir.mkdir(parents=True, exist_ok=True)
