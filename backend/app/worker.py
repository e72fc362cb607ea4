"""Worker pools that drain the job queue.

Each pool runs ``concurrency`` daemon threads ("lanes") against one queue.
Every lane owns its own asyncio event loop so async handlers (httpx calls,
async services) run the same way the rest of the backend runs them. A shared
rolling-window rate limiter caps how many jobs the whole pool may start per
window, independent of per-job backoff.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import traceback
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from app.errors import ErrorClass, RetryableJobError, classify_error, retry_after
from app.queue import Job, JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Any]

# State writes after a handler returns (ack, fail, release)
SETTLE_ATTEMPTS = 3
SETTLE_DELAY_SECONDS = 0.5

STALE_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimit:
    max: int
    per_window: timedelta


class RateLimiter:
    """Allow at most ``max_starts`` acquisitions per rolling ``window``."""

    __slots__ = ("_max", "_window", "_starts", "_lock", "_clock")

    def __init__(
        self,
        max_starts: int,
        window: timedelta,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_starts
        self._window = window.total_seconds()
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()
        self._clock = clock

    def try_acquire(self) -> float:
        """Take a slot if one is free. Returns 0.0 on success, else seconds to wait."""
        with self._lock:
            now = self._clock()
            while self._starts and now - self._starts[0] >= self._window:
                self._starts.popleft()
            if len(self._starts) < self._max:
                self._starts.append(now)
                return 0.0
            return self._starts[0] + self._window - now

    def acquire(self, stop_event: threading.Event | None = None) -> bool:
        """Block until a slot is free. Returns False if ``stop_event`` fired first."""
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                return True
            if stop_event is None:
                time.sleep(wait)
            elif stop_event.wait(wait):
                return False


class WorkerPool:
    """Fixed-size pool of lanes consuming one queue."""

    __slots__ = (
        "_queue",
        "_queue_name",
        "_handler",
        "_concurrency",
        "_limiter",
        "_timeout",
        "_poll_timeout",
        "_stale_after",
        "_sweep_lock",
        "_last_sweep",
        "_threads",
        "_stop_event",
        "_counter_lock",
        "_processed",
        "_failed",
        "_reclaimed",
    )

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: Handler,
        *,
        concurrency: int = 1,
        rate_limit: RateLimit | None = None,
        timeout: float | None = None,
        poll_timeout: float = 1.0,
        stale_after: timedelta | None = None,
    ) -> None:
        """``stale_after`` enables a periodic sweep that returns jobs stuck
        ``active`` that long to the queue; it should exceed the longest
        handler run (``timeout`` for async handlers)."""
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._queue_name = queue_name
        self._handler = handler
        self._concurrency = concurrency
        self._limiter = (
            RateLimiter(rate_limit.max, rate_limit.per_window) if rate_limit else None
        )
        self._timeout = timeout
        self._poll_timeout = poll_timeout
        self._stale_after = stale_after
        self._sweep_lock = threading.Lock()
        self._last_sweep = time.monotonic()
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._counter_lock = threading.Lock()
        self._processed = 0
        self._failed = 0
        self._reclaimed = 0

    @property
    def queue_name(self) -> str:
        return self._queue_name

    def start(self) -> None:
        """Start the daemon lanes."""
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_lane,
                name=f"{self._queue_name}-worker-{i}",
                daemon=True,
            )
            for i in range(self._concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Worker pool for %s started with %d lane(s)",
            self._queue_name,
            self._concurrency,
        )

    def stop(self, timeout: float = 10) -> None:
        """Signal the lanes to stop and wait for in-flight jobs to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool for %s stopped", self._queue_name)

    def _run_lane(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            while not self._stop_event.is_set():
                self._maybe_sweep()
                try:
                    job = self._queue.dequeue(
                        self._queue_name,
                        timeout=self._poll_timeout,
                        stop_event=self._stop_event,
                    )
                except Exception:
                    logger.exception("Error dequeuing from %s", self._queue_name)
                    self._stop_event.wait(self._poll_timeout)
                    continue
                if job is None:
                    continue
                self._execute(job, loop)
        finally:
            loop.close()

    def process_one(self, timeout: float | None = 0) -> Job | None:
        """Claim and run a single job on the calling thread. Returns the job, if any."""
        job = self._queue.dequeue(self._queue_name, timeout=timeout)
        if job is None:
            return None
        loop = asyncio.new_event_loop()
        try:
            self._execute(job, loop)
        finally:
            loop.close()
        return job

    def reclaim_stale(self) -> int:
        """Run the stale-job sweep now. Returns the number of jobs reclaimed."""
        if self._stale_after is None:
            return 0
        reclaimed = self._queue.reclaim_stale(self._queue_name, self._stale_after)
        with self._counter_lock:
            self._reclaimed += reclaimed
        return reclaimed

    def _maybe_sweep(self) -> None:
        if self._stale_after is None:
            return
        with self._sweep_lock:
            now = time.monotonic()
            if now - self._last_sweep < STALE_SWEEP_INTERVAL_SECONDS:
                return
            self._last_sweep = now
        try:
            self.reclaim_stale()
        except Exception:
            logger.exception("Stale job sweep failed on %s", self._queue_name)

    def _settle(self, job: Job, action: Callable[[], Any], what: str) -> bool:
        """Apply a state write, retrying transient database errors.

        Returns False when every try failed; the row then stays ``active``
        until the stale-job sweep returns it to the queue.
        """
        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            try:
                action()
                return True
            except Exception:
                if attempt == SETTLE_ATTEMPTS:
                    job.log.exception(
                        "Could not %s after %d tries, leaving it for the stale-job sweep",
                        what,
                        attempt,
                    )
                    return False
                job.log.warning(
                    "Could not %s (try %d/%d), retrying",
                    what,
                    attempt,
                    SETTLE_ATTEMPTS,
                    exc_info=True,
                )
                time.sleep(SETTLE_DELAY_SECONDS * attempt)
        return False

    def _execute(self, job: Job, loop: asyncio.AbstractEventLoop) -> None:
        if self._limiter is not None and not self._limiter.acquire(self._stop_event):
            self._settle(job, lambda: self._queue.release(job), "release job")
            return

        job.log.info(
            "Processing %s (attempt %d/%d)", job.name, job.attempt, job.max_attempts
        )
        try:
            result = self._invoke(job, loop)
        except Exception as exc:
            self._handle_failure(job, exc, traceback.format_exc())
            return

        self._settle(job, lambda: self._queue.ack(job, result), "mark job completed")
        with self._counter_lock:
            self._processed += 1

    def _invoke(self, job: Job, loop: asyncio.AbstractEventLoop) -> Any:
        result = self._handler(job)
        if not inspect.isawaitable(result):
            return result
        if self._timeout is not None:
            result = asyncio.wait_for(result, self._timeout)
        try:
            return loop.run_until_complete(result)
        except asyncio.TimeoutError as exc:
            raise RetryableJobError(
                f"Handler timed out after {self._timeout}s"
            ) from exc

    def _handle_failure(self, job: Job, exc: Exception, tb: str) -> None:
        error_class = classify_error(exc)
        job.log.error(
            "Handler failed on attempt %d/%d (%s): %s",
            job.attempt,
            job.max_attempts,
            error_class.value,
            exc,
        )
        with self._counter_lock:
            self._failed += 1
        self._settle(
            job,
            lambda: self._queue.fail(
                job,
                exc,
                permanent=error_class is ErrorClass.PERMANENT,
                delay=retry_after(exc),
                error_traceback=tb,
            ),
            "record job failure",
        )

    def stats(self) -> dict:
        with self._counter_lock:
            processed, failed, reclaimed = self._processed, self._failed, self._reclaimed
        return {
            "queue": self._queue_name,
            "concurrency": self._concurrency,
            "running_lanes": sum(1 for t in self._threads if t.is_alive()),
            "processed": processed,
            "failed_attempts": failed,
            "reclaimed": reclaimed,
        }


def start_worker(
    queue: JobQueue,
    queue_name: str,
    handler: Handler,
    *,
    concurrency: int = 1,
    rate_limit: RateLimit | None = None,
    timeout: float | None = None,
    stale_after: timedelta | None = None,
) -> WorkerPool:
    """Build and start a pool in one call."""
    pool = WorkerPool(
        queue,
        queue_name,
        handler,
        concurrency=concurrency,
        rate_limit=rate_limit,
        timeout=timeout,
        stale_after=stale_after,
    )
    pool.start()
    return pool
