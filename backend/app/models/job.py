from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import CheckConstraint, Index, text
from sqlmodel import Field, SQLModel


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATES = (JobState.WAITING.value, JobState.ACTIVE.value, JobState.DELAYED.value)

_IN_FLIGHT_SQL = "state IN ('waiting', 'active', 'delayed')"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Aware UTC for a stored or caller-supplied instant.

    SQLite has no offset column, so depending on the driver layer a value can
    come back naive; naive always means UTC here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"
    __table_args__ = (
        CheckConstraint(
            "state IN ('waiting', 'active', 'delayed', 'completed', 'failed')",
            name="ck_background_jobs_state",
        ),
        # One in-flight job per idempotency key and queue
        Index(
            "ux_background_jobs_inflight_key",
            "queue_name",
            "job_key",
            unique=True,
            sqlite_where=text(_IN_FLIGHT_SQL),
            postgresql_where=text(_IN_FLIGHT_SQL),
        ),
        Index("ix_background_jobs_claim", "queue_name", "state", "available_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    queue_name: str = Field(index=True)
    name: str
    job_key: str | None = Field(default=None)
    payload_json: str  # JSON-serialized job payload
    correlation_id: str | None = Field(default=None)
    user_id: str | None = Field(default=None)
    state: str = Field(default=JobState.WAITING.value)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    backoff_seconds: float = Field(default=5.0)
    available_at: datetime = Field(default_factory=utcnow)
    error_message: str | None = Field(default=None)
    error_traceback: str | None = Field(default=None)
    result_json: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)


class BackgroundJobRead(BaseModel):
    id: str
    queue_name: str
    name: str
    job_key: str | None
    state: str
    attempt: int
    max_attempts: int
    available_at: datetime
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}
