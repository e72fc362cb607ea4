from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.job import utcnow

UNCATEGORIZED = "uncategorized"


class Bookmark(SQLModel, table=True):
    __tablename__ = "bookmarks"
    __table_args__ = (
        UniqueConstraint("user_id", "url", name="uq_bookmarks_user_url"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    url: str
    title: str
    description: str | None = Field(default=None)
    # Reassign the whole list on update; JSON columns don't track in-place mutation
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    ai_generated: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_usable_tags(self) -> bool:
        tags = self.tags or []
        return bool(tags) and UNCATEGORIZED not in tags
