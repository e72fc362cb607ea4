"""Follow-up and interview reminder scans.

Both scans are triggered by jobs on the ``reminders`` queue. A reminder is
due when its instant falls on the right calendar day *in the user's time
zone* (today for follow-ups, tomorrow for interviews), and, if the user set a
preferred send time, when the current local hour matches it. Anything not due
yet is left for a later scan.

One bad record never fails a scan: broken references are skipped with a
warning, send failures are written to the ledger, and the loop moves on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session, col, select

from app.config import Settings
from app.models.application import ApplicationContact, Interview, JobApplication, User
from app.models.job import as_utc, utcnow
from app.models.scheduled_email import ScheduledEmailParentType
from app.queue import Job
from app.services.email import EmailService, FollowUpReminder, InterviewReminder
from app.services.scheduled_emails import ScheduledEmailService

logger = logging.getLogger(__name__)

REMINDERS_QUEUE = "reminders"
FOLLOW_UP_SCAN = "process-due-reminders"
INTERVIEW_SCAN = "process-interview-reminders"

UTC = ZoneInfo("UTC")

INTERVIEW_LOOKAHEAD = timedelta(hours=72)

_LABEL_OVERRIDES = {"hr": "HR"}


# ── pure eligibility helpers ─────────────────────────────────────


def resolve_timezone(name: str | None) -> ZoneInfo:
    """The user's zone, or UTC when unset or unknown."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, falling back to UTC", name)
        return UTC


def parse_reminder_hour(value: str | None) -> int | None:
    """Hour from an ``HH:MM`` preference. None means "any hour"."""
    if not value:
        return None
    try:
        hour = int(value.split(":", 1)[0])
    except ValueError:
        logger.warning("Ignoring malformed reminder time %r", value)
        return None
    if not 0 <= hour <= 23:
        logger.warning("Ignoring out-of-range reminder time %r", value)
        return None
    return hour


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    """Convert a stored instant (naive means UTC) to wall-clock time in ``tz``."""
    return as_utc(instant).astimezone(tz)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return to_local(instant, tz).date()


def is_same_local_day(instant: datetime, now: datetime, tz: ZoneInfo) -> bool:
    return local_date(instant, tz) == local_date(now, tz)


def is_local_tomorrow(instant: datetime, now: datetime, tz: ZoneInfo) -> bool:
    return local_date(instant, tz) == local_date(now, tz) + timedelta(days=1)


def hour_matches(now: datetime, tz: ZoneInfo, hour: int | None) -> bool:
    if hour is None:
        return True
    return to_local(now, tz).hour == hour


def format_date_label(instant: datetime, tz: ZoneInfo) -> str:
    """E.g. ``Monday, June 2, 2025``."""
    local = to_local(instant, tz)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_datetime_label(instant: datetime, tz: ZoneInfo) -> str:
    """E.g. ``Monday, June 2, 2025 at 9:30 AM EDT``."""
    local = to_local(instant, tz)
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return (
        f"{format_date_label(local, tz)} at {hour}:{local:%M} {meridiem} {local.tzname()}"
    )


def humanize(value: str | None) -> str:
    """``phone_screen`` -> ``Phone Screen``."""
    if not value:
        return ""
    if value in _LABEL_OVERRIDES:
        return _LABEL_OVERRIDES[value]
    return value.replace("_", " ").title()


# ── scans ────────────────────────────────────────────────────────


@dataclass
class ScanResult:
    scanned: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0  # not reached before the scan deadline

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ReminderService:
    """Runs reminder scans and sends what is due."""

    def __init__(
        self,
        settings: Settings,
        email_service: EmailService,
        ledger: ScheduledEmailService | None = None,
        engine=None,
        clock=time.monotonic,
    ) -> None:
        self._settings = settings
        self._email = email_service
        self._ledger = ledger or ScheduledEmailService()
        self._engine = engine
        self._lookback = timedelta(hours=settings.follow_up_lookback_hours)
        self._lookahead = timedelta(hours=settings.follow_up_lookahead_hours)
        self._scan_budget = settings.reminder_scan_timeout_seconds
        self._clock = clock

    def _get_engine(self):
        if self._engine is not None:
            return self._engine
        from app.db import engine
        return engine

    def handle(self, job: Job) -> dict:
        """Queue handler for scan jobs. Unknown scan types complete as no-ops."""
        scan_type = job.payload.get("type")
        with Session(self._get_engine()) as db:
            if scan_type == FOLLOW_UP_SCAN:
                result = self.process_follow_up_reminders(db)
            elif scan_type == INTERVIEW_SCAN:
                result = self.process_interview_reminders(db)
            else:
                job.log.warning("Ignoring unknown reminder scan type %r", scan_type)
                return {"ignored": scan_type}
        job.log.info(
            "%s: scanned=%d sent=%d skipped=%d failed=%d deferred=%d",
            scan_type,
            result.scanned,
            result.sent,
            result.skipped,
            result.failed,
            result.deferred,
        )
        return result.as_dict()

    def _deadline(self) -> float | None:
        if not self._scan_budget:
            return None
        return self._clock() + self._scan_budget

    def _past(self, deadline: float | None) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _resolve_owner(
        self, db: Session, job_application_id: str, source: str
    ) -> tuple[JobApplication, User] | None:
        application = db.get(JobApplication, job_application_id)
        if application is None or not application.user_id:
            logger.warning(
                "%s points at missing job application %s, skipping",
                source,
                job_application_id,
            )
            return None
        user = db.get(User, application.user_id)
        if user is None or not user.email:
            logger.warning(
                "%s belongs to missing user %s (or user has no email), skipping",
                source,
                application.user_id,
            )
            return None
        return application, user

    # ── follow-ups ───────────────────────────────────────────────

    def process_follow_up_reminders(
        self, db: Session, now: datetime | None = None
    ) -> ScanResult:
        now = as_utc(now) if now is not None else utcnow()
        deadline = self._deadline()
        contacts = db.exec(
            select(ApplicationContact)
            .where(ApplicationContact.follow_up_reminder_at >= now - self._lookback)
            .where(ApplicationContact.follow_up_reminder_at <= now + self._lookahead)
            .where(col(ApplicationContact.follow_up_reminder_sent_at).is_(None))
            .order_by(ApplicationContact.follow_up_reminder_at)
        ).all()

        result = ScanResult()
        if not contacts:
            logger.info("No follow-up reminders in window")
            return result

        logger.info("Checking %d follow-up reminder(s)", len(contacts))
        for index, contact in enumerate(contacts):
            if self._past(deadline):
                result.deferred = len(contacts) - index
                logger.warning(
                    "Follow-up scan hit its deadline, %d contact(s) left for next run",
                    result.deferred,
                )
                break
            result.scanned += 1
            try:
                outcome = self._process_contact(db, contact, now)
            except Exception:
                db.rollback()
                logger.exception("Unexpected error on follow-up for contact %s", contact.id)
                outcome = "failed"
            setattr(result, outcome, getattr(result, outcome) + 1)
        return result

    def _process_contact(self, db: Session, contact: ApplicationContact, now: datetime) -> str:
        owner = self._resolve_owner(
            db, contact.job_application_id, f"Contact {contact.id}"
        )
        if owner is None:
            return "skipped"
        application, user = owner

        tz = resolve_timezone(user.timezone)
        if not is_same_local_day(contact.follow_up_reminder_at, now, tz):
            return "skipped"
        if not hour_matches(now, tz, parse_reminder_hour(user.reminder_time)):
            return "skipped"

        parent = ScheduledEmailParentType.CONTACT.value
        try:
            self._email.send_follow_up_reminder(
                user.email,
                user.first_name,
                FollowUpReminder(
                    contact_name=contact.name,
                    company_name=application.company_name,
                    job_title=application.job_title,
                    reminder_date_label=format_date_label(contact.follow_up_reminder_at, tz),
                ),
            )
        except Exception as exc:
            logger.error("Failed to send follow-up reminder for contact %s: %s", contact.id, exc)
            self._ledger_failed(db, parent, contact.id, str(exc))
            return "failed"

        contact.follow_up_reminder_sent_at = now
        contact.updated_at = now
        db.add(contact)
        db.commit()
        self._ledger_sent(db, parent, contact.id, now)
        logger.info("Follow-up reminder sent for contact %s to user %s", contact.id, user.id)
        return "sent"

    # ── interviews ───────────────────────────────────────────────

    def process_interview_reminders(
        self, db: Session, now: datetime | None = None
    ) -> ScanResult:
        now = as_utc(now) if now is not None else utcnow()
        deadline = self._deadline()
        interviews = db.exec(
            select(Interview)
            .where(Interview.scheduled_at >= now)
            .where(Interview.scheduled_at <= now + INTERVIEW_LOOKAHEAD)
            .where(col(Interview.interview_reminder_sent_at).is_(None))
            .order_by(Interview.scheduled_at)
        ).all()

        result = ScanResult()
        if not interviews:
            logger.info("No upcoming interviews to remind about")
            return result

        logger.info("Checking %d upcoming interview(s)", len(interviews))
        for index, interview in enumerate(interviews):
            if self._past(deadline):
                result.deferred = len(interviews) - index
                logger.warning(
                    "Interview scan hit its deadline, %d interview(s) left for next run",
                    result.deferred,
                )
                break
            result.scanned += 1
            try:
                outcome = self._process_interview(db, interview, now)
            except Exception:
                db.rollback()
                logger.exception("Unexpected error on reminder for interview %s", interview.id)
                outcome = "failed"
            setattr(result, outcome, getattr(result, outcome) + 1)
        return result

    def _process_interview(self, db: Session, interview: Interview, now: datetime) -> str:
        owner = self._resolve_owner(
            db, interview.job_application_id, f"Interview {interview.id}"
        )
        if owner is None:
            return "skipped"
        application, user = owner

        tz = resolve_timezone(user.timezone)
        if not is_local_tomorrow(interview.scheduled_at, now, tz):
            return "skipped"
        if not hour_matches(now, tz, parse_reminder_hour(user.reminder_time)):
            return "skipped"

        parent = ScheduledEmailParentType.INTERVIEW.value
        try:
            self._email.send_interview_reminder(
                user.email,
                user.first_name,
                InterviewReminder(
                    company_name=application.company_name,
                    job_title=application.job_title,
                    interview_type_label=humanize(interview.interview_type),
                    format_label=humanize(interview.interview_format),
                    scheduled_at_label=format_datetime_label(interview.scheduled_at, tz),
                ),
            )
        except Exception as exc:
            logger.error("Failed to send reminder for interview %s: %s", interview.id, exc)
            self._ledger_failed(db, parent, interview.id, str(exc))
            return "failed"

        interview.interview_reminder_sent_at = now
        interview.updated_at = now
        db.add(interview)
        db.commit()
        self._ledger_sent(db, parent, interview.id, now)
        logger.info("Interview reminder sent for interview %s to user %s", interview.id, user.id)
        return "sent"

    # ── ledger (best effort) ─────────────────────────────────────

    def _ledger_sent(self, db: Session, parent_type: str, parent_id: str, when: datetime) -> None:
        try:
            self._ledger.mark_sent(db, parent_type, parent_id, when)
        except Exception:
            db.rollback()
            logger.exception("Could not mark ledger entry %s/%s sent", parent_type, parent_id)

    def _ledger_failed(self, db: Session, parent_type: str, parent_id: str, message: str) -> None:
        try:
            self._ledger.mark_failed(db, parent_type, parent_id, message)
        except Exception:
            db.rollback()
            logger.exception("Could not mark ledger entry %s/%s failed", parent_type, parent_id)
