"""Bookmark creation and the producer side of tag generation."""

from __future__ import annotations

import logging
import time

from sqlmodel import Session, select

from app.models.bookmark import Bookmark
from app.queue import JobHandle, JobQueue
from app.services.bookmark_tagging import (
    GENERATE_TAGS_JOB,
    REGENERATE_TAGS_JOB,
    TAGS_QUEUE,
)

logger = logging.getLogger(__name__)


class DuplicateBookmarkError(Exception):
    """The user already saved this URL."""


class BookmarkNotFoundError(Exception):
    pass


def enqueue_bookmark_tagging(
    queue: JobQueue,
    bookmark_id: str,
    user_id: str,
    url: str,
    title: str,
    description: str | None = None,
    *,
    job_key: str | None = None,
    correlation_id: str | None = None,
    name: str = GENERATE_TAGS_JOB,
) -> JobHandle:
    """Queue a tagging job. Defaults the key to ``bookmark-<id>``."""
    return queue.enqueue(
        TAGS_QUEUE,
        name,
        {
            "bookmark_id": bookmark_id,
            "user_id": user_id,
            "url": url,
            "title": title,
            "description": description,
        },
        job_key=job_key or f"bookmark-{bookmark_id}",
        correlation_id=correlation_id,
        user_id=user_id,
    )


class BookmarkService:
    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue

    def create_bookmark(
        self,
        db: Session,
        user_id: str,
        url: str,
        title: str,
        description: str | None = None,
        tags: list[str] | None = None,
        use_ai: bool = True,
        correlation_id: str | None = None,
    ) -> Bookmark:
        """Save a bookmark and, unless tags were supplied, queue tag generation."""
        existing = db.exec(
            select(Bookmark).where(Bookmark.user_id == user_id).where(Bookmark.url == url)
        ).first()
        if existing is not None:
            raise DuplicateBookmarkError(f"Bookmark already exists for {url}")

        bookmark = Bookmark(
            user_id=user_id,
            url=url,
            title=title,
            description=description,
            tags=list(tags or []),
            ai_generated=False,
        )
        db.add(bookmark)
        db.commit()
        db.refresh(bookmark)

        if use_ai and not tags:
            handle = enqueue_bookmark_tagging(
                self._queue,
                bookmark.id,
                user_id,
                url,
                title,
                description,
                correlation_id=correlation_id,
            )
            logger.info("Queued tag generation for bookmark %s as job %s", bookmark.id, handle.id)
        return bookmark

    def regenerate_tags(
        self,
        db: Session,
        user_id: str,
        bookmark_id: str,
        correlation_id: str | None = None,
    ) -> JobHandle:
        """Queue a fresh tagging run with a unique key, even if one is in flight."""
        bookmark = db.exec(
            select(Bookmark)
            .where(Bookmark.id == bookmark_id)
            .where(Bookmark.user_id == user_id)
        ).first()
        if bookmark is None:
            raise BookmarkNotFoundError(f"Bookmark {bookmark_id} not found")

        return enqueue_bookmark_tagging(
            self._queue,
            bookmark.id,
            user_id,
            bookmark.url,
            bookmark.title,
            bookmark.description,
            job_key=f"regenerate-{bookmark.id}-{int(time.time() * 1000)}",
            correlation_id=correlation_id,
            name=REGENERATE_TAGS_JOB,
        )
