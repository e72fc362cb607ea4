from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

import app.models  # noqa: F401  registers SQLModel tables

from app.config import Settings, get_settings
from app.db import create_db_and_tables
from app.queue import JobQueue, QueueOptions
from app.routers import health
from app.services.bookmark_tagging import (
    FAILED_TAGS_QUEUE,
    TAGS_QUEUE,
    BookmarkTaggingConsumer,
)
from app.services.bookmarks import BookmarkService
from app.services.classifier import ClassificationService
from app.services.email import EmailService
from app.services.loop_scheduler import LoopScheduler
from app.services.reminders import REMINDERS_QUEUE, ReminderService
from app.worker import RateLimit, start_worker

logger = logging.getLogger(__name__)


def configure_queues(queue: JobQueue, settings: Settings) -> None:
    """Register retry and retention policy for every queue the app uses."""
    max_backoff = settings.worker_retry_max_delay_seconds
    queue.register(
        TAGS_QUEUE,
        QueueOptions(
            max_attempts=settings.bookmark_tag_max_attempts,
            backoff_seconds=settings.bookmark_tag_backoff_seconds,
            max_backoff_seconds=max_backoff,
            keep_completed=settings.bookmark_tag_keep_completed,
            keep_completed_for=timedelta(hours=settings.bookmark_tag_keep_completed_hours),
            keep_failed=settings.bookmark_tag_keep_failed,
            keep_failed_for=timedelta(days=settings.bookmark_tag_keep_failed_days),
        ),
    )
    queue.register(
        FAILED_TAGS_QUEUE,
        QueueOptions(
            max_attempts=1,
            max_backoff_seconds=max_backoff,
            keep_waiting=settings.bookmark_dead_letter_keep,
            keep_waiting_for=timedelta(days=settings.bookmark_dead_letter_keep_days),
        ),
    )
    queue.register(
        REMINDERS_QUEUE,
        QueueOptions(
            max_attempts=settings.reminder_max_attempts,
            backoff_seconds=settings.reminder_backoff_seconds,
            max_backoff_seconds=max_backoff,
            keep_completed=settings.reminder_keep_completed,
            keep_completed_for=timedelta(days=settings.reminder_keep_completed_days),
            keep_failed=settings.reminder_keep_failed,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    from app.db import engine as db_engine

    queue = JobQueue(db_engine, poll_interval=settings.worker_poll_interval_seconds)
    configure_queues(queue, settings)
    queue.recover_incomplete()
    app.state.queue = queue
    app.state.bookmark_service = BookmarkService(queue)

    classifier = ClassificationService(
        settings.ollama_url,
        model=settings.llm_model,
        timeout=settings.llm_timeout_seconds,
    )
    tagging = BookmarkTaggingConsumer(queue, classifier, settings, engine=db_engine)
    queue.on_failed(TAGS_QUEUE, tagging.on_permanent_failure)

    reminders = ReminderService(settings, EmailService(settings), engine=db_engine)

    grace = settings.worker_stale_grace_seconds
    app.state.worker_pools = [
        start_worker(
            queue,
            TAGS_QUEUE,
            tagging.handle,
            concurrency=settings.bookmark_tag_concurrency,
            rate_limit=RateLimit(
                max=settings.bookmark_tag_rate_limit_max,
                per_window=timedelta(seconds=settings.bookmark_tag_rate_limit_window_seconds),
            ),
            timeout=settings.bookmark_tag_timeout_seconds,
            stale_after=timedelta(seconds=settings.bookmark_tag_timeout_seconds + grace),
        ),
        # Scans must never overlap, or a reminder could be sent twice
        start_worker(
            queue,
            REMINDERS_QUEUE,
            reminders.handle,
            concurrency=1,
            stale_after=timedelta(seconds=settings.reminder_scan_timeout_seconds + grace),
        ),
    ]

    loop_scheduler = LoopScheduler(settings)
    loop_scheduler.initialize(db_engine)
    app.state.loop_scheduler = loop_scheduler

    async def _reminder_ticker() -> None:
        """Periodically enqueue reminder scans that are due."""
        while True:
            try:
                submitted = loop_scheduler.tick(db_engine, queue)
                if submitted:
                    logger.info("Submitted reminder scans: %s", ", ".join(submitted))
            except Exception:
                logger.exception("Error in reminder ticker")
            await asyncio.sleep(settings.scheduler_tick_seconds)

    ticker_task = asyncio.create_task(_reminder_ticker())

    yield

    # Shutdown: stop the ticker before the pools so no scan is enqueued mid-stop
    ticker_task.cancel()
    try:
        await ticker_task
    except asyncio.CancelledError:
        pass
    for pool in app.state.worker_pools:
        pool.stop()


app = FastAPI(
    title="Job Tracker",
    description="Background processing for the job application tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
