"""Queue consumer that fills in bookmark tags from the classification service.

Bookmarks are created with empty tags and a ``generate-tags`` job. The job
either lands real tags (``ai_generated=True``) or, once its retry budget is
spent, the dead-letter hook forces the ``uncategorized`` fallback so nothing
is left looking half-processed.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlmodel import Session, select

from app.config import Settings
from app.errors import PermanentJobError, RetryableJobError
from app.models.bookmark import UNCATEGORIZED, Bookmark
from app.models.job import utcnow
from app.queue import Job, JobQueue
from app.services.classifier import ClassificationError, ClassificationService

logger = logging.getLogger(__name__)

TAGS_QUEUE = "bookmark-tags"
FAILED_TAGS_QUEUE = "bookmark-tags-failed"
GENERATE_TAGS_JOB = "generate-tags"
REGENERATE_TAGS_JOB = "regenerate-tags"
PERMANENT_FAILURE_JOB = "permanent-failure"


class BookmarkTaggingConsumer:
    """Handler for ``bookmark-tags`` jobs plus its dead-letter hook."""

    def __init__(
        self,
        queue: JobQueue,
        classifier: ClassificationService,
        settings: Settings,
        engine=None,
    ) -> None:
        self._queue = queue
        self._classifier = classifier
        self._unhealthy_retry = timedelta(
            seconds=settings.bookmark_tag_unhealthy_retry_seconds
        )
        self._engine = engine

    def _get_engine(self):
        if self._engine is not None:
            return self._engine
        from app.db import engine
        return engine

    @staticmethod
    def _load(session: Session, bookmark_id: str, user_id: str | None) -> Bookmark | None:
        stmt = select(Bookmark).where(Bookmark.id == bookmark_id)
        if user_id is not None:
            stmt = stmt.where(Bookmark.user_id == user_id)
        return session.exec(stmt).first()

    async def handle(self, job: Job) -> dict:
        bookmark_id = job.payload["bookmark_id"]
        user_id = job.payload.get("user_id") or job.user_id

        with Session(self._get_engine()) as session:
            bookmark = self._load(session, bookmark_id, user_id)
            if bookmark is None:
                raise PermanentJobError(f"Bookmark {bookmark_id} not found")
            url, title, description = bookmark.url, bookmark.title, bookmark.description

        if not await self._classifier.health_check():
            raise RetryableJobError(
                "Classification service is unhealthy",
                retry_after=self._unhealthy_retry,
            )

        try:
            result = await self._classifier.classify(url, title, description)
        except ClassificationError as exc:
            if exc.retryable:
                raise RetryableJobError(str(exc)) from exc
            raise PermanentJobError(str(exc)) from exc

        if result.is_uncategorized:
            if not job.is_last_attempt:
                raise RetryableJobError(
                    f"Classifier gave no usable tags (attempt {job.attempt}/{job.max_attempts})"
                )
            job.log.warning(
                "No usable tags on final attempt for bookmark %s, using fallback",
                bookmark_id,
            )
            tags, ai_generated = [UNCATEGORIZED], False
        else:
            tags, ai_generated = result.tags, True

        with Session(self._get_engine()) as session:
            bookmark = self._load(session, bookmark_id, user_id)
            if bookmark is None:
                raise PermanentJobError(f"Bookmark {bookmark_id} not found")
            bookmark.tags = list(tags)
            bookmark.ai_generated = ai_generated
            if not bookmark.description and result.summary:
                bookmark.description = result.summary
            bookmark.updated_at = utcnow()
            session.add(bookmark)
            session.commit()

        job.log.info("Tagged bookmark %s with %s", bookmark_id, tags)
        return {"bookmark_id": bookmark_id, "tags": tags, "ai_generated": ai_generated}

    def on_permanent_failure(self, job: Job, error: BaseException) -> None:
        """Dead-letter hook: record the failure for audit, then apply safe tags."""
        bookmark_id = job.payload.get("bookmark_id")
        user_id = job.payload.get("user_id") or job.user_id

        try:
            self._queue.enqueue(
                FAILED_TAGS_QUEUE,
                PERMANENT_FAILURE_JOB,
                {
                    "original_job_id": job.id,
                    "bookmark_id": bookmark_id,
                    "user_id": user_id,
                    "url": job.payload.get("url"),
                    "title": job.payload.get("title"),
                    "last_error": str(error),
                    "retry_count": job.attempt,
                    "failed_at": utcnow().isoformat(),
                },
                job_key=f"dead-{job.id}",
                correlation_id=job.correlation_id,
                user_id=user_id,
            )
            self._queue.prune(FAILED_TAGS_QUEUE)
        except Exception:
            job.log.exception("Could not record dead-lettered tagging job for audit")

        if bookmark_id is None:
            return
        try:
            with Session(self._get_engine()) as session:
                bookmark = self._load(session, bookmark_id, user_id)
                if bookmark is None or bookmark.has_usable_tags():
                    return
                bookmark.tags = [UNCATEGORIZED]
                bookmark.ai_generated = False
                bookmark.updated_at = utcnow()
                session.add(bookmark)
                session.commit()
            job.log.warning(
                "Tag generation exhausted for bookmark %s, set to %s",
                bookmark_id,
                UNCATEGORIZED,
            )
        except Exception:
            job.log.exception("Could not apply fallback tags to bookmark %s", bookmark_id)
