"""Durable job queue backed by the ``background_jobs`` table.

Jobs move ``waiting -> active -> completed``; a failed attempt either goes to
``delayed`` (retry at ``available_at``) or, once the retry budget is spent or
the failure is permanent, to ``failed``, which is the dead-letter bucket.
Listeners registered with ``on_failed`` run when a job lands there.

An optional ``job_key`` acts as an idempotency key: while a job with the same
key is in flight on a queue, enqueueing it again returns the existing job.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.models.job import IN_FLIGHT_STATES, BackgroundJob, JobState, as_utc, utcnow

logger = logging.getLogger(__name__)

FailedListener = Callable[["Job", BaseException], None]


@dataclass(frozen=True)
class QueueOptions:
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    max_backoff_seconds: float = 600.0
    keep_completed: int | None = None
    keep_completed_for: timedelta | None = None
    keep_failed: int | None = None
    keep_failed_for: timedelta | None = None
    # Queues nobody consumes (audit trails) are trimmed by these instead
    keep_waiting: int | None = None
    keep_waiting_for: timedelta | None = None


@dataclass(frozen=True)
class JobHandle:
    id: str
    queue_name: str
    job_key: str | None
    created: bool  # False when an in-flight job with the same key already existed


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefix log lines with the job's identity and correlation id."""

    def process(self, msg, kwargs):
        extra = self.extra or {}
        prefix = "[job=%s queue=%s correlation=%s]" % (
            extra.get("job_id"),
            extra.get("queue_name"),
            extra.get("correlation_id") or "-",
        )
        return f"{prefix} {msg}", kwargs


@dataclass
class Job:
    """Snapshot of a claimed job handed to a handler."""

    id: str
    queue_name: str
    name: str
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    backoff_seconds: float
    job_key: str | None = None
    correlation_id: str | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    last_error: str | None = field(default=None, repr=False)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @property
    def log(self) -> JobLoggerAdapter:
        return JobLoggerAdapter(
            logger,
            {
                "job_id": self.id,
                "queue_name": self.queue_name,
                "correlation_id": self.correlation_id,
            },
        )

    @classmethod
    def from_row(cls, row: BackgroundJob) -> Job:
        return cls(
            id=row.id,
            queue_name=row.queue_name,
            name=row.name,
            payload=json.loads(row.payload_json),
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            backoff_seconds=row.backoff_seconds,
            job_key=row.job_key,
            correlation_id=row.correlation_id,
            user_id=row.user_id,
            created_at=as_utc(row.created_at),
            last_error=row.error_message,
        )


def backoff_delay(
    base_seconds: float, attempt: int, max_seconds: float | None = None
) -> timedelta:
    """Exponential backoff: base * 2^(attempt-1), optionally capped."""
    delay = base_seconds * (2 ** max(attempt - 1, 0))
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    return timedelta(seconds=delay)


class JobQueue:
    """Named durable queues sharing one table.

    All methods are safe to call from several worker threads; claiming uses a
    compare-and-set update so one job is never handed to two lanes.
    """

    __slots__ = (
        "_engine",
        "_options",
        "_listeners",
        "_cond",
        "_enqueue_lock",
        "_poll_interval",
    )

    def __init__(self, engine=None, poll_interval: float = 1.0) -> None:
        self._engine = engine
        self._options: dict[str, QueueOptions] = {}
        self._listeners: dict[str, list[FailedListener]] = {}
        self._cond = threading.Condition()
        self._enqueue_lock = threading.Lock()
        self._poll_interval = poll_interval

    def _get_engine(self):
        """Get the DB engine (deferred import to avoid circular imports)."""
        if self._engine is not None:
            return self._engine
        from app.db import engine
        return engine

    # ── configuration ────────────────────────────────────────────

    def register(self, queue_name: str, options: QueueOptions) -> None:
        self._options[queue_name] = options

    def options(self, queue_name: str) -> QueueOptions:
        return self._options.get(queue_name, QueueOptions())

    def on_failed(self, queue_name: str, listener: FailedListener) -> None:
        """Run ``listener(job, error)`` whenever a job on the queue is dead-lettered."""
        self._listeners.setdefault(queue_name, []).append(listener)

    # ── producer side ────────────────────────────────────────────

    def enqueue(
        self,
        queue_name: str,
        name: str,
        payload: dict[str, Any],
        *,
        job_key: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        correlation_id: str | None = None,
        user_id: str | None = None,
        delay: timedelta | None = None,
    ) -> JobHandle:
        """Add a job. Fire-and-forget: the caller never sees handler errors."""
        opts = self.options(queue_name)
        now = utcnow()
        row = BackgroundJob(
            queue_name=queue_name,
            name=name,
            job_key=job_key,
            payload_json=json.dumps(payload, default=str),
            correlation_id=correlation_id,
            user_id=user_id,
            max_attempts=max_attempts or opts.max_attempts,
            backoff_seconds=(
                backoff_seconds if backoff_seconds is not None else opts.backoff_seconds
            ),
            state=JobState.DELAYED.value if delay else JobState.WAITING.value,
            available_at=now + delay if delay else now,
        )

        engine = self._get_engine()
        with self._enqueue_lock:
            with Session(engine) as session:
                if job_key is not None:
                    existing = self._find_in_flight(session, queue_name, job_key)
                    if existing is not None:
                        logger.info(
                            "Job %s already in flight on %s as %s, skipping enqueue",
                            job_key,
                            queue_name,
                            existing.id,
                        )
                        return JobHandle(existing.id, queue_name, job_key, created=False)
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another process won the race for this key
                    session.rollback()
                    existing = self._find_in_flight(session, queue_name, job_key)
                    if existing is None:
                        raise
                    return JobHandle(existing.id, queue_name, job_key, created=False)
                session.refresh(row)
                job_id = row.id

        logger.info("Enqueued %s job %s on %s", name, job_id, queue_name)
        with self._cond:
            self._cond.notify_all()
        return JobHandle(job_id, queue_name, job_key, created=True)

    @staticmethod
    def _find_in_flight(
        session: Session, queue_name: str, job_key: str | None
    ) -> BackgroundJob | None:
        return session.exec(
            select(BackgroundJob)
            .where(BackgroundJob.queue_name == queue_name)
            .where(BackgroundJob.job_key == job_key)
            .where(col(BackgroundJob.state).in_(IN_FLIGHT_STATES))
        ).first()

    # ── consumer side ────────────────────────────────────────────

    def dequeue(
        self,
        queue_name: str,
        timeout: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> Job | None:
        """Claim the next available job, blocking until one is ready.

        Returns None when ``timeout`` elapses or ``stop_event`` is set.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self._claim_next(queue_name)
            if job is not None:
                return job
            if stop_event is not None and stop_event.is_set():
                return None
            wait_for = self._poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait_for = min(wait_for, remaining)
            with self._cond:
                self._cond.wait(wait_for)

    def _claim_next(self, queue_name: str) -> Job | None:
        engine = self._get_engine()
        now = utcnow()
        with Session(engine) as session:
            candidates = session.exec(
                select(BackgroundJob.id)
                .where(BackgroundJob.queue_name == queue_name)
                .where(
                    col(BackgroundJob.state).in_(
                        (JobState.WAITING.value, JobState.DELAYED.value)
                    )
                )
                .where(BackgroundJob.available_at <= now)
                .order_by(BackgroundJob.available_at, BackgroundJob.created_at)
                .limit(5)
            ).all()

            for job_id in candidates:
                result = session.execute(
                    update(BackgroundJob)
                    .where(BackgroundJob.id == job_id)
                    .where(
                        col(BackgroundJob.state).in_(
                            (JobState.WAITING.value, JobState.DELAYED.value)
                        )
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        attempt=BackgroundJob.attempt + 1,
                        started_at=now,
                        updated_at=now,
                    )
                )
                session.commit()
                if result.rowcount != 1:
                    continue  # claimed by another lane
                row = session.get(BackgroundJob, job_id)
                session.refresh(row)
                return Job.from_row(row)
        return None

    def ack(self, job: Job, result: Any = None) -> None:
        """Mark a job completed."""
        now = utcnow()
        with Session(self._get_engine()) as session:
            row = session.get(BackgroundJob, job.id)
            if row is None:
                return
            row.state = JobState.COMPLETED.value
            row.completed_at = now
            row.updated_at = now
            row.error_message = None
            row.error_traceback = None
            row.result_json = json.dumps(result, default=str) if result is not None else None
            session.add(row)
            session.commit()
        job.log.info("Completed %s (attempt %d)", job.name, job.attempt)
        self._prune_quietly(job.queue_name)

    def retry(
        self,
        job: Job,
        delay: timedelta,
        error: BaseException | str | None = None,
        error_traceback: str | None = None,
    ) -> datetime:
        """Put a job back as ``delayed`` until ``now + delay``. Returns that instant."""
        now = utcnow()
        retry_at = now + delay
        with Session(self._get_engine()) as session:
            row = session.get(BackgroundJob, job.id)
            if row is None:
                return retry_at
            row.state = JobState.DELAYED.value
            row.available_at = retry_at
            row.updated_at = now
            row.error_message = _truncate(str(error), 2000) if error is not None else None
            row.error_traceback = _truncate(error_traceback, 4000)
            session.add(row)
            session.commit()
        job.log.info(
            "Scheduled retry %d/%d at %s",
            job.attempt + 1,
            job.max_attempts,
            retry_at.isoformat(),
        )
        with self._cond:
            self._cond.notify_all()
        return retry_at

    def fail(
        self,
        job: Job,
        error: BaseException,
        *,
        permanent: bool = False,
        delay: timedelta | None = None,
        error_traceback: str | None = None,
    ) -> bool:
        """Record a failed attempt.

        Retries with ``delay`` (or exponential backoff) while attempts remain
        and the failure is not permanent; otherwise dead-letters the job and
        notifies ``on_failed`` listeners. Returns True when terminal.
        """
        if not permanent and job.attempt < job.max_attempts:
            if delay is None:
                delay = self.backoff_delay(job)
            self.retry(job, delay, error, error_traceback)
            return False

        now = utcnow()
        with Session(self._get_engine()) as session:
            row = session.get(BackgroundJob, job.id)
            if row is not None:
                row.state = JobState.FAILED.value
                row.completed_at = now
                row.updated_at = now
                row.error_message = _truncate(str(error), 2000)
                row.error_traceback = _truncate(error_traceback, 4000)
                session.add(row)
                session.commit()

        job.last_error = str(error)
        job.log.error(
            "Permanently failed %s after %d/%d attempts: %s",
            job.name,
            job.attempt,
            job.max_attempts,
            error,
        )
        for listener in self._listeners.get(job.queue_name, []):
            try:
                listener(job, error)
            except Exception:
                job.log.exception("Dead-letter listener failed")
        self._prune_quietly(job.queue_name)
        return True

    def release(self, job: Job) -> None:
        """Hand a claimed job back untouched, undoing the attempt count."""
        now = utcnow()
        with Session(self._get_engine()) as session:
            row = session.get(BackgroundJob, job.id)
            if row is None or row.state != JobState.ACTIVE.value:
                return
            row.state = JobState.WAITING.value
            row.attempt = max(row.attempt - 1, 0)
            row.available_at = now
            row.updated_at = now
            session.add(row)
            session.commit()
        with self._cond:
            self._cond.notify_all()

    def backoff_delay(self, job: Job) -> timedelta:
        opts = self.options(job.queue_name)
        return backoff_delay(job.backoff_seconds, job.attempt, opts.max_backoff_seconds)

    # ── maintenance ──────────────────────────────────────────────

    def prune(self, queue_name: str) -> int:
        """Apply retention to completed and failed jobs. Returns rows removed."""
        opts = self.options(queue_name)
        removed = 0
        removed += self._prune_state(
            queue_name, JobState.COMPLETED, opts.keep_completed, opts.keep_completed_for
        )
        removed += self._prune_state(
            queue_name, JobState.FAILED, opts.keep_failed, opts.keep_failed_for
        )
        removed += self._prune_state(
            queue_name,
            JobState.WAITING,
            opts.keep_waiting,
            opts.keep_waiting_for,
            stamp=BackgroundJob.created_at,
        )
        return removed

    def _prune_quietly(self, queue_name: str) -> None:
        # Retention runs after a state change has committed; its failure must
        # not be reported as a failed transition.
        try:
            self.prune(queue_name)
        except Exception:
            logger.exception("Retention prune failed for %s", queue_name)

    def _prune_state(
        self,
        queue_name: str,
        state: JobState,
        keep_count: int | None,
        keep_for: timedelta | None,
        stamp=BackgroundJob.completed_at,
    ) -> int:
        if keep_count is None and keep_for is None:
            return 0
        stale_ids: set[str] = set()
        with Session(self._get_engine()) as session:
            base = (
                select(BackgroundJob.id)
                .where(BackgroundJob.queue_name == queue_name)
                .where(BackgroundJob.state == state.value)
            )
            if keep_count is not None:
                stale_ids.update(
                    session.exec(
                        base.order_by(col(stamp).desc()).offset(keep_count)
                    ).all()
                )
            if keep_for is not None:
                cutoff = utcnow() - keep_for
                stale_ids.update(
                    session.exec(base.where(stamp < cutoff)).all()
                )
            if stale_ids:
                session.execute(
                    delete(BackgroundJob).where(col(BackgroundJob.id).in_(list(stale_ids)))
                )
                session.commit()
        return len(stale_ids)

    def recover_incomplete(self) -> int:
        """Return jobs stuck ``active`` from a crashed run to ``waiting``.

        Call once at startup, before any worker lane starts.
        """
        now = utcnow()
        with Session(self._get_engine()) as session:
            stuck = session.exec(
                select(BackgroundJob).where(BackgroundJob.state == JobState.ACTIVE.value)
            ).all()
            for row in stuck:
                row.state = JobState.WAITING.value
                row.available_at = now
                row.updated_at = now
                session.add(row)
            if stuck:
                session.commit()
                logger.info("Recovered %d incomplete jobs from previous run", len(stuck))
        return len(stuck)

    def reclaim_stale(self, queue_name: str, older_than: timedelta) -> int:
        """Return jobs left ``active`` for longer than ``older_than`` to ``waiting``.

        A job outliving its handler timeout means the lane lost track of it,
        typically because its completion or failure write never landed. The
        spent attempt stays counted; a job already at its limit gets one final
        try. Returns the number of jobs reclaimed.
        """
        now = utcnow()
        cutoff = now - older_than
        with Session(self._get_engine()) as session:
            result = session.execute(
                update(BackgroundJob)
                .where(BackgroundJob.queue_name == queue_name)
                .where(BackgroundJob.state == JobState.ACTIVE.value)
                .where(BackgroundJob.started_at <= cutoff)
                .values(
                    state=JobState.WAITING.value,
                    attempt=case(
                        (
                            BackgroundJob.attempt >= BackgroundJob.max_attempts,
                            BackgroundJob.max_attempts - 1,
                        ),
                        else_=BackgroundJob.attempt,
                    ),
                    available_at=now,
                    updated_at=now,
                )
            )
            session.commit()
        reclaimed = result.rowcount or 0
        if reclaimed:
            logger.warning(
                "Reclaimed %d stale active job(s) on %s", reclaimed, queue_name
            )
            with self._cond:
                self._cond.notify_all()
        return reclaimed

    def get(self, job_id: str) -> BackgroundJob | None:
        with Session(self._get_engine()) as session:
            return session.get(BackgroundJob, job_id)

    def list_dead_letter(self, queue_name: str | None = None, limit: int = 10) -> list[BackgroundJob]:
        with Session(self._get_engine()) as session:
            stmt = select(BackgroundJob).where(BackgroundJob.state == JobState.FAILED.value)
            if queue_name is not None:
                stmt = stmt.where(BackgroundJob.queue_name == queue_name)
            stmt = stmt.order_by(col(BackgroundJob.updated_at).desc()).limit(limit)
            return list(session.exec(stmt).all())

    def stats(self) -> dict[str, dict[str, int]]:
        """Job counts per queue and state, for the health endpoint."""
        counts: dict[str, dict[str, int]] = {}
        for queue_name in self._options:
            counts[queue_name] = {state.value: 0 for state in JobState}
        with Session(self._get_engine()) as session:
            rows = session.exec(
                select(BackgroundJob.queue_name, BackgroundJob.state, func.count())
                .group_by(BackgroundJob.queue_name, BackgroundJob.state)
            ).all()
        for queue_name, state, count in rows:
            counts.setdefault(queue_name, {s.value: 0 for s in JobState})[state] = count
        return counts


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]
