from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from app.models.job import utcnow


class InterviewType(str, Enum):
    PHONE_SCREEN = "phone_screen"
    TECHNICAL = "technical"
    BEHAVIORAL = "behavioral"
    SYSTEM_DESIGN = "system_design"
    HR = "hr"
    FINAL = "final"


class InterviewFormat(str, Enum):
    PHONE = "phone"
    VIDEO = "video"
    IN_PERSON = "in_person"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    first_name: str
    last_name: str | None = Field(default=None)
    timezone: str | None = Field(default=None)  # IANA name, e.g. "America/New_York"
    reminder_time: str | None = Field(default=None)  # "HH:MM" local preferred send time
    created_at: datetime = Field(default_factory=utcnow)


class JobApplication(SQLModel, table=True):
    __tablename__ = "job_applications"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    company_name: str
    job_title: str
    status: str = Field(default="applied")
    created_at: datetime = Field(default_factory=utcnow)


class ApplicationContact(SQLModel, table=True):
    __tablename__ = "application_contacts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    job_application_id: str = Field(index=True)
    name: str
    role: str | None = Field(default=None)
    email: str | None = Field(default=None)
    follow_up_reminder_at: datetime | None = Field(default=None, index=True)
    follow_up_reminder_sent_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Interview(SQLModel, table=True):
    __tablename__ = "interviews"
    __table_args__ = (
        CheckConstraint(
            "interview_format IN ('phone', 'video', 'in_person')",
            name="ck_interviews_format",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    job_application_id: str = Field(index=True)
    interview_type: str = Field(default=InterviewType.PHONE_SCREEN.value)
    interview_format: str = Field(default=InterviewFormat.VIDEO.value)
    scheduled_at: datetime = Field(index=True)
    interview_reminder_sent_at: datetime | None = Field(default=None)
    interviewer_name: str | None = Field(default=None)
    duration_minutes: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
