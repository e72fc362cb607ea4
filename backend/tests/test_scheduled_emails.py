"""Tests for the scheduled email ledger and the reminder source write paths."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import select

from app.models.application import ApplicationContact, Interview, JobApplication
from app.models.job import as_utc
from app.models.scheduled_email import ScheduledEmail, ScheduledEmailRead, ScheduledEmailStatus
from app.services import reminder_sources
from app.services.reminder_sources import CONTACT, INTERVIEW, ReminderSourceNotFoundError
from app.services.scheduled_emails import ScheduledEmailService

WHEN = datetime(2025, 6, 2, 13, 0, tzinfo=timezone.utc)


@pytest.fixture(name="ledger")
def ledger_fixture() -> ScheduledEmailService:
    return ScheduledEmailService()


def _upsert(ledger, session, parent_id: str, when: datetime, user_id: str = "u1"):
    return ledger.upsert(
        session,
        CONTACT,
        parent_id,
        type="follow_up",
        job_application_id="app-1",
        user_id=user_id,
        scheduled_for=when,
        meta={"company_name": "Acme"},
    )


class TestLedger:
    def test_upsert_creates_pending_entry(self, session, ledger):
        entry = _upsert(ledger, session, "c1", WHEN)
        assert entry.status == ScheduledEmailStatus.PENDING.value
        assert entry.meta == {"company_name": "Acme"}

    def test_upsert_resets_outcome(self, session, ledger):
        _upsert(ledger, session, "c1", WHEN)
        ledger.mark_failed(session, CONTACT, "c1", "SMTP refused")

        entry = _upsert(ledger, session, "c1", WHEN + timedelta(days=1))

        assert entry.status == ScheduledEmailStatus.PENDING.value
        assert entry.failure_message is None
        assert as_utc(entry.scheduled_for) == WHEN + timedelta(days=1)
        assert len(session.exec(select(ScheduledEmail)).all()) == 1

    def test_list_upcoming_pending_only_soonest_first(self, session, ledger):
        _upsert(ledger, session, "late", WHEN + timedelta(days=2))
        _upsert(ledger, session, "soon", WHEN)
        _upsert(ledger, session, "done", WHEN - timedelta(days=1))
        _upsert(ledger, session, "other-user", WHEN, user_id="u2")
        ledger.mark_sent(session, CONTACT, "done", WHEN)

        upcoming = ledger.list_upcoming(session, "u1")

        assert [as_utc(e.scheduled_for) for e in upcoming] == [WHEN, WHEN + timedelta(days=2)]
        assert upcoming[0].meta == {"company_name": "Acme"}

    def test_list_upcoming_limit(self, session, ledger):
        for i in range(3):
            _upsert(ledger, session, f"c{i}", WHEN + timedelta(hours=i))
        assert len(ledger.list_upcoming(session, "u1", limit=2)) == 2

    def test_mark_sent_and_failed(self, session, ledger):
        _upsert(ledger, session, "c1", WHEN)
        _upsert(ledger, session, "c2", WHEN)

        sent = ledger.mark_sent(session, CONTACT, "c1", WHEN)
        failed = ledger.mark_failed(session, CONTACT, "c2", "x" * 5000)

        assert sent.status == "sent"
        assert as_utc(sent.sent_at) == WHEN
        assert failed.status == "failed"
        assert len(failed.failure_message) == 2000
        failures = ledger.list_failed(session)
        assert [e.parent_id for e in failures] == ["c2"]
        assert isinstance(failures[0], ScheduledEmailRead)
        assert failures[0].status == "failed"
        assert failures[0].meta == {"company_name": "Acme"}

    def test_missing_entry_is_noop(self, session, ledger):
        assert ledger.mark_sent(session, CONTACT, "nope") is None
        assert ledger.mark_failed(session, CONTACT, "nope", "err") is None
        assert ledger.delete(session, CONTACT, "nope") is False


class TestStoredInstants:
    def test_aware_instant_round_trips(self, session, ledger):
        new_york = datetime(2025, 6, 2, 9, 0, tzinfo=ZoneInfo("America/New_York"))

        _upsert(ledger, session, "c1", new_york)
        session.expire_all()
        stored = ledger._find(session, CONTACT, "c1")

        assert as_utc(stored.scheduled_for) == WHEN
        assert as_utc(stored.scheduled_for).tzinfo is timezone.utc
        assert as_utc(stored.created_at).tzinfo is timezone.utc

    def test_naive_input_is_taken_as_utc(self, session, ledger):
        _upsert(ledger, session, "c1", WHEN.replace(tzinfo=None))
        ledger.mark_sent(session, CONTACT, "c1", WHEN.replace(tzinfo=None))
        session.expire_all()
        stored = ledger._find(session, CONTACT, "c1")

        assert as_utc(stored.scheduled_for) == WHEN
        assert as_utc(stored.sent_at) == WHEN

    def test_stored_instants_compare_in_queries(self, session, ledger):
        _upsert(ledger, session, "early", WHEN)
        _upsert(ledger, session, "late", WHEN + timedelta(hours=1))

        rows = session.exec(
            select(ScheduledEmail).where(ScheduledEmail.scheduled_for > WHEN)
        ).all()

        assert [row.parent_id for row in rows] == ["late"]

    def test_as_utc(self):
        assert as_utc(None) is None
        assert as_utc(datetime(2025, 6, 2, 13, 0)) == WHEN
        tokyo = datetime(2025, 6, 2, 22, 0, tzinfo=ZoneInfo("Asia/Tokyo"))
        assert as_utc(tokyo) == WHEN
        assert as_utc(tokyo).tzinfo is timezone.utc


class TestReminderSources:
    def test_create_contact_writes_ledger(self, session, ledger, make_owner):
        user, application = make_owner()
        contact = reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=WHEN
        )

        entry = ledger._find(session, CONTACT, contact.id)
        assert entry.type == "follow_up"
        assert entry.user_id == user.id
        assert entry.meta["contact_name"] == "Grace"
        assert entry.meta["job_title"] == "Backend Engineer"

    def test_contact_without_reminder_has_no_entry(self, session, ledger, make_owner):
        user, application = make_owner()
        contact = reminder_sources.create_contact(session, user.id, application.id, "Grace")
        assert ledger._find(session, CONTACT, contact.id) is None

    def test_create_rejects_foreign_application(self, session, make_owner):
        user, application = make_owner()
        with pytest.raises(ReminderSourceNotFoundError):
            reminder_sources.create_contact(session, "someone-else", application.id, "Grace")

    def test_moving_reminder_rearms_it(self, session, ledger, make_owner):
        user, application = make_owner()
        contact = reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=WHEN
        )
        contact.follow_up_reminder_sent_at = WHEN
        session.add(contact)
        session.commit()
        ledger.mark_sent(session, CONTACT, contact.id, WHEN)

        moved = reminder_sources.set_follow_up_reminder(
            session, contact.id, WHEN + timedelta(days=3)
        )

        assert moved.follow_up_reminder_sent_at is None
        entry = ledger._find(session, CONTACT, contact.id)
        assert entry.status == "pending"
        assert as_utc(entry.scheduled_for) == WHEN + timedelta(days=3)

    def test_clearing_reminder_removes_entry(self, session, ledger, make_owner):
        user, application = make_owner()
        contact = reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=WHEN
        )

        reminder_sources.set_follow_up_reminder(session, contact.id, None)

        assert ledger._find(session, CONTACT, contact.id) is None

    def test_reschedule_interview_rearms_it(self, session, ledger, make_owner):
        user, application = make_owner()
        interview = reminder_sources.create_interview(
            session, user.id, application.id, WHEN, interview_type="hr"
        )
        interview.interview_reminder_sent_at = WHEN - timedelta(days=1)
        session.add(interview)
        session.commit()

        moved = reminder_sources.reschedule_interview(session, interview.id, WHEN + timedelta(days=7))

        assert moved.interview_reminder_sent_at is None
        entry = ledger._find(session, INTERVIEW, interview.id)
        assert as_utc(entry.scheduled_for) == WHEN + timedelta(days=7)
        assert entry.meta["interview_type"] == "hr"

    def test_invalid_interview_format_rejected(self, session, make_owner):
        user, application = make_owner()
        with pytest.raises(ValueError):
            reminder_sources.create_interview(
                session, user.id, application.id, WHEN, interview_format="carrier_pigeon"
            )

    def test_delete_sources_remove_entries(self, session, ledger, make_owner):
        user, application = make_owner()
        contact = reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=WHEN
        )
        interview = reminder_sources.create_interview(session, user.id, application.id, WHEN)
        contact_id, interview_id = contact.id, interview.id

        reminder_sources.delete_contact(session, contact_id)
        reminder_sources.delete_interview(session, interview_id)

        assert session.exec(select(ScheduledEmail)).all() == []
        with pytest.raises(ReminderSourceNotFoundError):
            reminder_sources.delete_contact(session, contact_id)

    def test_delete_application_cascades(self, session, make_owner):
        user, application = make_owner()
        _, other = make_owner(email="grace@example.com")
        reminder_sources.create_contact(
            session, user.id, application.id, "Grace", follow_up_reminder_at=WHEN
        )
        reminder_sources.create_interview(session, user.id, application.id, WHEN)
        kept = reminder_sources.create_interview(session, other.user_id, other.id, WHEN)

        reminder_sources.delete_job_application(session, user.id, application.id)

        assert session.get(JobApplication, application.id) is None
        assert session.exec(select(ApplicationContact)).all() == []
        assert [i.id for i in session.exec(select(Interview)).all()] == [kept.id]
        assert [e.parent_id for e in session.exec(select(ScheduledEmail)).all()] == [kept.id]
