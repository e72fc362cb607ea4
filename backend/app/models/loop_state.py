from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.job import utcnow


class LoopState(SQLModel, table=True):
    __tablename__ = "loop_state"

    loop_name: str = Field(primary_key=True)
    last_run_at: datetime | None = Field(default=None)
    next_run_at: datetime = Field(default_factory=utcnow)
    enabled: bool = Field(default=True)
