from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlmodel import Session, select

from app.config import Settings
from app.models.job import as_utc, utcnow
from app.models.loop_state import LoopState
from app.queue import JobQueue
from app.services.reminders import FOLLOW_UP_SCAN, INTERVIEW_SCAN, REMINDERS_QUEUE

logger = logging.getLogger(__name__)

# loop name -> scan job type
LOOP_SCANS: dict[str, str] = {
    "follow_up_reminders": FOLLOW_UP_SCAN,
    "interview_reminders": INTERVIEW_SCAN,
}


def next_slot(anchor: datetime, interval: timedelta, now: datetime) -> datetime:
    """First ``anchor + k * interval`` (k >= 1) strictly after ``now``."""
    if anchor > now:
        return anchor + interval
    missed = (now - anchor) // interval
    return anchor + (missed + 1) * interval


class LoopScheduler:
    """Track when each reminder scan last ran and enqueue the ones that are due."""

    def __init__(self, settings: Settings) -> None:
        interval = timedelta(minutes=settings.reminder_scan_interval_minutes)
        self._intervals: dict[str, timedelta] = {name: interval for name in LOOP_SCANS}

    def initialize(self, engine) -> None:
        """Ensure all loop names exist in the loop_state table.

        New loops are due immediately so a fresh deployment scans on first tick.
        Called once at startup from the app lifespan.
        """
        now = utcnow()
        with Session(engine) as session:
            for loop_name in self._intervals:
                existing = session.get(LoopState, loop_name)
                if existing is None:
                    session.add(LoopState(loop_name=loop_name, next_run_at=now, enabled=True))
                    logger.info("Initialized loop state: %s", loop_name)
            session.commit()

    def check_due(self, engine) -> list[str]:
        """Return loop names that are enabled and due to run."""
        now = utcnow()
        with Session(engine) as session:
            stmt = (
                select(LoopState)
                .where(LoopState.enabled == True)  # noqa: E712
                .where(LoopState.next_run_at <= now)
            )
            due_loops = session.exec(stmt).all()
            return [loop.loop_name for loop in due_loops if loop.loop_name in self._intervals]

    def mark_started(self, engine, loop_name: str) -> None:
        """Update loop state after a scan job has been submitted.

        The next run stays on the grid of the previous one, so a late tick
        does not push every later run back. Scans gate on the local hour, and
        a schedule that crept past the hour would skip it entirely.
        """
        now = utcnow()
        interval = self._intervals.get(loop_name)
        if interval is None:
            logger.warning("Unknown loop name: %s", loop_name)
            return

        with Session(engine) as session:
            state = session.get(LoopState, loop_name)
            if state is not None:
                state.last_run_at = now
                state.next_run_at = next_slot(as_utc(state.next_run_at) or now, interval, now)
                session.add(state)
                session.commit()
                logger.debug(
                    "Marked loop %s as started, next run at %s",
                    loop_name,
                    state.next_run_at.isoformat(),
                )

    def set_enabled(self, engine, loop_name: str, enabled: bool) -> bool:
        with Session(engine) as session:
            state = session.get(LoopState, loop_name)
            if state is None:
                return False
            state.enabled = enabled
            session.add(state)
            session.commit()
        logger.info("Loop %s %s", loop_name, "enabled" if enabled else "disabled")
        return True

    def tick(self, engine, queue: JobQueue) -> list[str]:
        """Enqueue a scan for every due loop. Returns the loop names submitted.

        The scan type doubles as the job key, so a scan still waiting or
        running absorbs the new tick instead of queueing a duplicate.
        """
        submitted: list[str] = []
        for loop_name in self.check_due(engine):
            scan_type = LOOP_SCANS[loop_name]
            handle = queue.enqueue(
                REMINDERS_QUEUE,
                scan_type,
                {"type": scan_type},
                job_key=f"scan-{scan_type}",
                correlation_id=f"{loop_name}-{utcnow():%Y%m%dT%H%M%S}",
            )
            if not handle.created:
                logger.info("Scan %s still in flight, skipping this tick", scan_type)
            self.mark_started(engine, loop_name)
            submitted.append(loop_name)
        return submitted
