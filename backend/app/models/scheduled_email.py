from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, CheckConstraint, Column, Index
from sqlmodel import Field, SQLModel

from app.models.job import utcnow


class ScheduledEmailType(str, Enum):
    FOLLOW_UP = "follow_up"
    INTERVIEW = "interview"


class ScheduledEmailParentType(str, Enum):
    CONTACT = "ApplicationContact"
    INTERVIEW = "Interview"


class ScheduledEmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ScheduledEmail(SQLModel, table=True):
    __tablename__ = "scheduled_emails"
    __table_args__ = (
        CheckConstraint(
            "type IN ('follow_up', 'interview')", name="ck_scheduled_emails_type"
        ),
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed')",
            name="ck_scheduled_emails_status",
        ),
        Index("ix_scheduled_emails_upcoming", "user_id", "status", "scheduled_for"),
        Index("ix_scheduled_emails_parent", "parent_type", "parent_id", unique=True),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    type: str
    parent_type: str
    parent_id: str
    job_application_id: str = Field(index=True)
    user_id: str
    scheduled_for: datetime
    status: str = Field(default=ScheduledEmailStatus.PENDING.value)
    sent_at: datetime | None = Field(default=None)
    failure_message: str | None = Field(default=None)
    # company_name, job_title, contact_name, interview_type, interview_format
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UpcomingScheduledEmail(BaseModel):
    id: str
    type: str
    scheduled_for: datetime
    meta: dict
    job_application_id: str

    model_config = {"from_attributes": True}


class ScheduledEmailRead(BaseModel):
    id: str
    type: str
    parent_type: str
    parent_id: str
    user_id: str
    scheduled_for: datetime
    status: str
    sent_at: datetime | None
    failure_message: str | None
    meta: dict

    model_config = {"from_attributes": True}
