from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = "Job Tracker"
    environment: str = "development"
    log_level: str = "INFO"
    data_dir: Path = Path("./data")
    db_url: str = "sqlite:///./data/tracker.db"

    # Worker runtime
    worker_poll_interval_seconds: float = 1.0
    worker_retry_max_delay_seconds: int = 600  # 10 minutes cap
    scheduler_tick_seconds: int = 60
    # Active jobs older than handler timeout + grace are returned to their queue
    worker_stale_grace_seconds: int = 300

    # Bookmark tag generation queue
    bookmark_tag_max_attempts: int = 5
    bookmark_tag_backoff_seconds: int = 5
    bookmark_tag_concurrency: int = 2
    bookmark_tag_rate_limit_max: int = 10
    bookmark_tag_rate_limit_window_seconds: int = 60
    bookmark_tag_timeout_seconds: int = 120
    bookmark_tag_unhealthy_retry_seconds: int = 10
    bookmark_tag_keep_completed: int = 500
    bookmark_tag_keep_completed_hours: int = 24
    bookmark_tag_keep_failed: int = 1000
    bookmark_tag_keep_failed_days: int = 7
    bookmark_dead_letter_keep: int = 100
    bookmark_dead_letter_keep_days: int = 30

    # Reminder scan queue
    reminder_max_attempts: int = 2
    reminder_backoff_seconds: int = 5
    reminder_scan_interval_minutes: int = 60
    reminder_scan_timeout_seconds: int = 600
    reminder_keep_completed: int = 100
    reminder_keep_completed_days: int = 7
    reminder_keep_failed: int = 50
    follow_up_lookback_hours: int = 24
    follow_up_lookahead_hours: int = 48

    # Classification service (Ollama-compatible)
    ollama_url: str = "http://ollama:11434"
    llm_model: str = "llama3.2"
    llm_timeout_seconds: float = 60.0

    # SMTP (reminder emails)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "noreply@jobtracker.local"

    @model_validator(mode="after")
    def _check_worker_limits(self) -> Settings:
        if self.bookmark_tag_concurrency < 1:
            raise ValueError("BOOKMARK_TAG_CONCURRENCY must be at least 1")
        if self.bookmark_tag_max_attempts < 1 or self.reminder_max_attempts < 1:
            raise ValueError("Queue max attempts must be at least 1")
        if self.bookmark_tag_rate_limit_max < 1:
            raise ValueError("BOOKMARK_TAG_RATE_LIMIT_MAX must be at least 1")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
