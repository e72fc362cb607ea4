"""Tests for follow-up and interview reminder scans."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.models.application import JobApplication
from app.models.job import as_utc, utcnow
from app.models.scheduled_email import ScheduledEmailStatus
from app.queue import Job
from app.services import reminder_sources
from app.services.email import EmailDeliveryError
from app.services.reminders import (
    FOLLOW_UP_SCAN,
    INTERVIEW_SCAN,
    REMINDERS_QUEUE,
    UTC,
    ReminderService,
    ScanResult,
    format_date_label,
    format_datetime_label,
    humanize,
    hour_matches,
    is_local_tomorrow,
    is_same_local_day,
    parse_reminder_hour,
    resolve_timezone,
)
from app.services.scheduled_emails import ScheduledEmailService


def _utc(*parts: int) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


NEW_YORK = "America/New_York"
# 09:00 EDT on Monday, June 2, 2025
NINE_AM_NY = _utc(2025, 6, 2, 13, 0)


# ── Helpers ──────────────────────────────────────────────────────────


def _make_service(settings, engine, email=None, **kwargs) -> ReminderService:
    return ReminderService(settings, email or MagicMock(), engine=engine, **kwargs)


def _scan_job(scan_type: str) -> Job:
    return Job(
        id="scan-1",
        queue_name=REMINDERS_QUEUE,
        name=scan_type,
        payload={"type": scan_type},
        attempt=1,
        max_attempts=2,
        backoff_seconds=5,
    )


def _ledger_entry(session, parent_type: str, parent_id: str):
    return ScheduledEmailService._find(session, parent_type, parent_id)


# ── Pure helpers ─────────────────────────────────────────────────────


class TestEligibilityHelpers:
    def test_resolve_timezone(self):
        assert resolve_timezone(None) is UTC
        assert resolve_timezone("") is UTC
        assert resolve_timezone(NEW_YORK).key == NEW_YORK

    def test_unknown_timezone_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus_Mons") is UTC

    @pytest.mark.parametrize(
        "value, expected",
        [("09:00", 9), ("9:30", 9), ("23:59", 23), (None, None), ("", None), ("25:00", None), ("soon", None)],
    )
    def test_parse_reminder_hour(self, value, expected):
        assert parse_reminder_hour(value) == expected

    def test_same_local_day_uses_user_zone(self):
        tz = resolve_timezone(NEW_YORK)
        # 02:00 UTC on June 3 is still June 2 in New York
        late_evening = _utc(2025, 6, 3, 2, 0)
        assert is_same_local_day(late_evening, NINE_AM_NY, tz)
        assert not is_same_local_day(late_evening, NINE_AM_NY, UTC)

    def test_naive_stored_instant_is_utc(self):
        tz = resolve_timezone(NEW_YORK)
        assert is_same_local_day(datetime(2025, 6, 3, 2, 0), NINE_AM_NY, tz)
        assert hour_matches(NINE_AM_NY.replace(tzinfo=None), tz, 9)

    def test_local_tomorrow(self):
        tz = resolve_timezone(NEW_YORK)
        assert is_local_tomorrow(_utc(2025, 6, 3, 13, 30), NINE_AM_NY, tz)
        assert not is_local_tomorrow(_utc(2025, 6, 2, 20, 0), NINE_AM_NY, tz)
        assert not is_local_tomorrow(_utc(2025, 6, 4, 13, 0), NINE_AM_NY, tz)

    def test_hour_matches(self):
        tz = resolve_timezone(NEW_YORK)
        assert hour_matches(NINE_AM_NY, tz, None)
        assert hour_matches(NINE_AM_NY, tz, 9)
        assert not hour_matches(NINE_AM_NY, tz, 13)

    def test_labels(self):
        tz = resolve_timezone(NEW_YORK)
        assert format_date_label(NINE_AM_NY, tz) == "Monday, June 2, 2025"
        assert (
            format_datetime_label(_utc(2025, 6, 3, 13, 30), tz)
            == "Tuesday, June 3, 2025 at 9:30 AM EDT"
        )
        assert format_datetime_label(_utc(2025, 6, 3, 0, 5), UTC).endswith("12:05 AM UTC")

    def test_humanize(self):
        assert humanize("phone_screen") == "Phone Screen"
        assert humanize("in_person") == "In Person"
        assert humanize("hr") == "HR"
        assert humanize(None) == ""


# ── Follow-up scan ───────────────────────────────────────────────────


class TestFollowUpScan:
    def test_fires_on_local_day(self, engine, session, settings, make_owner):
        user, application = make_owner(timezone=NEW_YORK)
        contact = reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=NINE_AM_NY
        )
        email = MagicMock()
        service = _make_service(settings, engine, email)

        result = service.process_follow_up_reminders(session, now=NINE_AM_NY)

        assert result.sent == 1
        email.send_follow_up_reminder.assert_called_once()
        to, name, reminder = email.send_follow_up_reminder.call_args.args
        assert to == "ada@example.com"
        assert name == "Ada"
        assert reminder.contact_name == "Grace"
        assert reminder.company_name == "Acme"
        assert reminder.reminder_date_label == "Monday, June 2, 2025"

        session.refresh(contact)
        assert as_utc(contact.follow_up_reminder_sent_at) == NINE_AM_NY
        entry = _ledger_entry(session, "ApplicationContact", contact.id)
        assert entry.status == ScheduledEmailStatus.SENT.value
        assert as_utc(entry.sent_at) == NINE_AM_NY

    def test_different_local_day_does_not_fire(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK)
        contact = make_contact(application.id, NINE_AM_NY)
        email = MagicMock()
        service = _make_service(settings, engine, email)

        result = service.process_follow_up_reminders(session, now=NINE_AM_NY + timedelta(days=1))

        assert result.sent == 0
        assert result.skipped == 1
        email.send_follow_up_reminder.assert_not_called()
        session.refresh(contact)
        assert contact.follow_up_reminder_sent_at is None

    def test_local_day_differs_from_utc_day(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK)
        # 22:00 June 2 in New York, already June 3 in UTC
        make_contact(application.id, _utc(2025, 6, 3, 2, 0))
        email = MagicMock()

        result = _make_service(settings, engine, email).process_follow_up_reminders(
            session, now=NINE_AM_NY
        )

        assert result.sent == 1

    def test_default_timezone_is_utc(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=None)
        make_contact(application.id, _utc(2025, 6, 3, 2, 0))
        email = MagicMock()

        result = _make_service(settings, engine, email).process_follow_up_reminders(
            session, now=NINE_AM_NY
        )

        assert result.sent == 0
        email.send_follow_up_reminder.assert_not_called()

    def test_preferred_hour_gates_sending(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK, reminder_time="10:00")
        contact = make_contact(application.id, NINE_AM_NY)
        email = MagicMock()
        service = _make_service(settings, engine, email)

        assert service.process_follow_up_reminders(session, now=NINE_AM_NY).sent == 0
        later = NINE_AM_NY + timedelta(hours=1)
        assert service.process_follow_up_reminders(session, now=later).sent == 1
        session.refresh(contact)
        assert as_utc(contact.follow_up_reminder_sent_at) == later

    def test_already_sent_is_not_resent(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK)
        make_contact(application.id, NINE_AM_NY)
        email = MagicMock()
        service = _make_service(settings, engine, email)

        service.process_follow_up_reminders(session, now=NINE_AM_NY)
        result = service.process_follow_up_reminders(session, now=NINE_AM_NY + timedelta(minutes=5))

        assert result.scanned == 0
        assert email.send_follow_up_reminder.call_count == 1

    def test_outside_window_not_scanned(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner()
        make_contact(application.id, NINE_AM_NY - timedelta(hours=25))
        make_contact(application.id, NINE_AM_NY + timedelta(hours=49))
        make_contact(application.id, None)

        result = _make_service(settings, engine).process_follow_up_reminders(
            session, now=NINE_AM_NY
        )

        assert result.scanned == 0

    def test_broken_references_do_not_abort_batch(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK)
        make_contact(application.id, NINE_AM_NY - timedelta(minutes=30), name="Valid")
        orphan = make_contact("deleted-app", NINE_AM_NY, name="Orphan")
        ghost_app = JobApplication(user_id="deleted-user", company_name="Gone", job_title="X")
        session.add(ghost_app)
        session.commit()
        make_contact(ghost_app.id, NINE_AM_NY, name="Ghost")
        email = MagicMock()

        result = _make_service(settings, engine, email).process_follow_up_reminders(
            session, now=NINE_AM_NY
        )

        assert result.scanned == 3
        assert result.sent == 1
        assert result.skipped == 2
        assert email.send_follow_up_reminder.call_count == 1
        session.refresh(orphan)
        assert orphan.follow_up_reminder_sent_at is None

    def test_send_failure_recorded_and_batch_continues(self, engine, session, settings, make_owner):
        user, application = make_owner(timezone=NEW_YORK)
        first = reminder_sources.create_contact(
            session, user.id, application.id, "First",
            follow_up_reminder_at=NINE_AM_NY - timedelta(hours=1),
        )
        second = reminder_sources.create_contact(
            session, user.id, application.id, "Second", follow_up_reminder_at=NINE_AM_NY
        )
        email = MagicMock()
        email.send_follow_up_reminder.side_effect = [EmailDeliveryError("SMTP refused"), None]

        result = _make_service(settings, engine, email).process_follow_up_reminders(
            session, now=NINE_AM_NY
        )

        assert result.failed == 1
        assert result.sent == 1
        session.refresh(first)
        session.refresh(second)
        assert first.follow_up_reminder_sent_at is None
        assert as_utc(second.follow_up_reminder_sent_at) == NINE_AM_NY
        failed_entry = _ledger_entry(session, "ApplicationContact", first.id)
        assert failed_entry.status == ScheduledEmailStatus.FAILED.value
        assert failed_entry.failure_message == "SMTP refused"

    def test_ledger_error_does_not_undo_send(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner(timezone=NEW_YORK)
        contact = make_contact(application.id, NINE_AM_NY)
        ledger = MagicMock()
        ledger.mark_sent.side_effect = RuntimeError("ledger down")
        service = ReminderService(settings, MagicMock(), ledger=ledger, engine=engine)

        result = service.process_follow_up_reminders(session, now=NINE_AM_NY)

        assert result.sent == 1
        session.refresh(contact)
        assert as_utc(contact.follow_up_reminder_sent_at) == NINE_AM_NY

    def test_deadline_defers_remaining(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner()
        make_contact(application.id, NINE_AM_NY - timedelta(minutes=2), name="A")
        make_contact(application.id, NINE_AM_NY - timedelta(minutes=1), name="B")
        clock = MagicMock(side_effect=itertools.chain([0.0, 0.0], itertools.repeat(10_000.0)))
        email = MagicMock()
        service = _make_service(settings, engine, email, clock=clock)

        result = service.process_follow_up_reminders(session, now=NINE_AM_NY)

        assert result.sent == 1
        assert result.deferred == 1


# ── Interview scan ───────────────────────────────────────────────────


class TestInterviewScan:
    def test_fires_day_before(self, engine, session, settings, make_owner):
        user, application = make_owner(timezone=NEW_YORK)
        interview = reminder_sources.create_interview(
            session,
            user.id,
            application.id,
            _utc(2025, 6, 3, 13, 30),
            interview_type="system_design",
            interview_format="in_person",
        )
        email = MagicMock()

        result = _make_service(settings, engine, email).process_interview_reminders(
            session, now=NINE_AM_NY
        )

        assert result.sent == 1
        to, name, reminder = email.send_interview_reminder.call_args.args
        assert reminder.interview_type_label == "System Design"
        assert reminder.format_label == "In Person"
        assert reminder.scheduled_at_label == "Tuesday, June 3, 2025 at 9:30 AM EDT"
        session.refresh(interview)
        assert as_utc(interview.interview_reminder_sent_at) == NINE_AM_NY
        assert _ledger_entry(session, "Interview", interview.id).status == "sent"

    @pytest.mark.parametrize(
        "scheduled_at",
        [_utc(2025, 6, 2, 20, 0), _utc(2025, 6, 4, 15, 0)],
    )
    def test_only_tomorrow_fires(self, engine, session, settings, make_owner, make_interview, scheduled_at):
        user, application = make_owner(timezone=NEW_YORK)
        make_interview(application.id, scheduled_at)
        email = MagicMock()

        result = _make_service(settings, engine, email).process_interview_reminders(
            session, now=NINE_AM_NY
        )

        assert result.sent == 0
        email.send_interview_reminder.assert_not_called()

    def test_past_and_sent_interviews_ignored(self, engine, session, settings, make_owner, make_interview):
        user, application = make_owner()
        make_interview(application.id, NINE_AM_NY - timedelta(hours=1))
        make_interview(
            application.id,
            NINE_AM_NY + timedelta(days=1),
            interview_reminder_sent_at=NINE_AM_NY - timedelta(hours=2),
        )

        result = _make_service(settings, engine).process_interview_reminders(
            session, now=NINE_AM_NY
        )

        assert result.scanned == 0

    def test_send_failure_marks_ledger(self, engine, session, settings, make_owner):
        user, application = make_owner()
        interview = reminder_sources.create_interview(
            session, user.id, application.id, NINE_AM_NY + timedelta(days=1)
        )
        email = MagicMock()
        email.send_interview_reminder.side_effect = EmailDeliveryError("SMTP not configured")

        result = _make_service(settings, engine, email).process_interview_reminders(
            session, now=NINE_AM_NY
        )

        assert result.failed == 1
        session.refresh(interview)
        assert interview.interview_reminder_sent_at is None
        entry = _ledger_entry(session, "Interview", interview.id)
        assert entry.status == "failed"
        assert entry.failure_message == "SMTP not configured"

    def test_missing_user_skipped(self, engine, session, settings, make_interview):
        application = JobApplication(user_id="nobody", company_name="Acme", job_title="Dev")
        session.add(application)
        session.commit()
        make_interview(application.id, NINE_AM_NY + timedelta(days=1))

        result = _make_service(settings, engine).process_interview_reminders(
            session, now=NINE_AM_NY
        )

        assert result.skipped == 1


# ── Queue handler ────────────────────────────────────────────────────


class TestHandle:
    @pytest.mark.parametrize(
        "scan_type, method",
        [
            (FOLLOW_UP_SCAN, "process_follow_up_reminders"),
            (INTERVIEW_SCAN, "process_interview_reminders"),
        ],
    )
    def test_dispatches_by_type(self, engine, settings, scan_type, method):
        service = _make_service(settings, engine)
        with patch.object(service, method, return_value=ScanResult(scanned=2, sent=1)) as scan:
            result = service.handle(_scan_job(scan_type))

        scan.assert_called_once()
        assert result["scanned"] == 2
        assert result["sent"] == 1

    def test_unknown_type_is_noop(self, engine, settings):
        service = _make_service(settings, engine)
        assert service.handle(_scan_job("process-something-else")) == {
            "ignored": "process-something-else"
        }

    def test_real_scan_through_handler(self, engine, session, settings, make_owner, make_contact):
        user, application = make_owner()
        make_contact(application.id, utcnow())
        email = MagicMock()

        result = _make_service(settings, engine, email).handle(_scan_job(FOLLOW_UP_SCAN))

        assert result["scanned"] == 1
        assert result["sent"] + result["skipped"] == 1
