"""Write paths for the records that carry reminders.

Contacts carry a follow-up instant and interviews a scheduled time. Whenever
that instant changes, the matching ``*_sent_at`` is cleared so the new
reminder can go out, and the ledger entry is upserted (or removed when the
reminder is cleared).
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlmodel import Session, select

from app.models.application import (
    ApplicationContact,
    Interview,
    InterviewFormat,
    InterviewType,
    JobApplication,
)
from app.models.job import as_utc, utcnow
from app.models.scheduled_email import ScheduledEmailParentType, ScheduledEmailType
from app.services.scheduled_emails import ScheduledEmailService

logger = logging.getLogger(__name__)

CONTACT = ScheduledEmailParentType.CONTACT.value
INTERVIEW = ScheduledEmailParentType.INTERVIEW.value


class ReminderSourceNotFoundError(Exception):
    pass


def _application_for_user(db: Session, user_id: str, job_application_id: str) -> JobApplication:
    application = db.exec(
        select(JobApplication)
        .where(JobApplication.id == job_application_id)
        .where(JobApplication.user_id == user_id)
    ).first()
    if application is None:
        raise ReminderSourceNotFoundError(
            f"Job application {job_application_id} not found"
        )
    return application


def _sync_contact_ledger(
    db: Session,
    contact: ApplicationContact,
    application: JobApplication | None,
    ledger: ScheduledEmailService,
) -> None:
    if contact.follow_up_reminder_at is None:
        ledger.delete(db, CONTACT, contact.id)
        return
    if application is None:
        logger.warning(
            "Contact %s has no job application, leaving ledger untouched", contact.id
        )
        return
    ledger.upsert(
        db,
        CONTACT,
        contact.id,
        type=ScheduledEmailType.FOLLOW_UP.value,
        job_application_id=application.id,
        user_id=application.user_id,
        scheduled_for=contact.follow_up_reminder_at,
        meta={
            "company_name": application.company_name,
            "job_title": application.job_title,
            "contact_name": contact.name,
        },
    )


def _sync_interview_ledger(
    db: Session,
    interview: Interview,
    application: JobApplication,
    ledger: ScheduledEmailService,
) -> None:
    ledger.upsert(
        db,
        INTERVIEW,
        interview.id,
        type=ScheduledEmailType.INTERVIEW.value,
        job_application_id=application.id,
        user_id=application.user_id,
        scheduled_for=interview.scheduled_at,
        meta={
            "company_name": application.company_name,
            "job_title": application.job_title,
            "interview_type": interview.interview_type,
            "interview_format": interview.interview_format,
        },
    )


# ── contacts ─────────────────────────────────────────────────────


def create_contact(
    db: Session,
    user_id: str,
    job_application_id: str,
    name: str,
    *,
    role: str | None = None,
    email: str | None = None,
    follow_up_reminder_at: datetime | None = None,
    ledger: ScheduledEmailService | None = None,
) -> ApplicationContact:
    ledger = ledger or ScheduledEmailService()
    application = _application_for_user(db, user_id, job_application_id)
    contact = ApplicationContact(
        job_application_id=application.id,
        name=name,
        role=role,
        email=email,
        follow_up_reminder_at=as_utc(follow_up_reminder_at),
    )
    db.add(contact)
    db.commit()
    db.refresh(contact)
    if follow_up_reminder_at is not None:
        _sync_contact_ledger(db, contact, application, ledger)
    logger.info("Contact %s created for application %s", contact.id, application.id)
    return contact


def set_follow_up_reminder(
    db: Session,
    contact_id: str,
    when: datetime | None,
    ledger: ScheduledEmailService | None = None,
) -> ApplicationContact:
    """Set, move or clear a contact's follow-up. Always re-arms the reminder."""
    ledger = ledger or ScheduledEmailService()
    contact = db.get(ApplicationContact, contact_id)
    if contact is None:
        raise ReminderSourceNotFoundError(f"Contact {contact_id} not found")

    contact.follow_up_reminder_at = as_utc(when)
    contact.follow_up_reminder_sent_at = None
    contact.updated_at = utcnow()
    db.add(contact)
    db.commit()
    db.refresh(contact)

    application = db.get(JobApplication, contact.job_application_id)
    _sync_contact_ledger(db, contact, application, ledger)
    return contact


def delete_contact(
    db: Session, contact_id: str, ledger: ScheduledEmailService | None = None
) -> None:
    ledger = ledger or ScheduledEmailService()
    contact = db.get(ApplicationContact, contact_id)
    if contact is None:
        raise ReminderSourceNotFoundError(f"Contact {contact_id} not found")
    db.delete(contact)
    db.commit()
    ledger.delete(db, CONTACT, contact_id)


# ── interviews ───────────────────────────────────────────────────


def create_interview(
    db: Session,
    user_id: str,
    job_application_id: str,
    scheduled_at: datetime,
    *,
    interview_type: str = InterviewType.PHONE_SCREEN.value,
    interview_format: str = InterviewFormat.VIDEO.value,
    interviewer_name: str | None = None,
    duration_minutes: int | None = None,
    ledger: ScheduledEmailService | None = None,
) -> Interview:
    ledger = ledger or ScheduledEmailService()
    application = _application_for_user(db, user_id, job_application_id)
    interview = Interview(
        job_application_id=application.id,
        interview_type=InterviewType(interview_type).value,
        interview_format=InterviewFormat(interview_format).value,
        scheduled_at=as_utc(scheduled_at),
        interviewer_name=interviewer_name,
        duration_minutes=duration_minutes,
    )
    db.add(interview)
    db.commit()
    db.refresh(interview)
    _sync_interview_ledger(db, interview, application, ledger)
    logger.info("Interview %s scheduled for application %s", interview.id, application.id)
    return interview


def reschedule_interview(
    db: Session,
    interview_id: str,
    scheduled_at: datetime,
    ledger: ScheduledEmailService | None = None,
) -> Interview:
    ledger = ledger or ScheduledEmailService()
    interview = db.get(Interview, interview_id)
    if interview is None:
        raise ReminderSourceNotFoundError(f"Interview {interview_id} not found")

    interview.scheduled_at = as_utc(scheduled_at)
    interview.interview_reminder_sent_at = None
    interview.updated_at = utcnow()
    db.add(interview)
    db.commit()
    db.refresh(interview)

    application = db.get(JobApplication, interview.job_application_id)
    if application is None:
        logger.warning(
            "Interview %s has no job application, leaving ledger untouched", interview.id
        )
    else:
        _sync_interview_ledger(db, interview, application, ledger)
    return interview


def delete_interview(
    db: Session, interview_id: str, ledger: ScheduledEmailService | None = None
) -> None:
    ledger = ledger or ScheduledEmailService()
    interview = db.get(Interview, interview_id)
    if interview is None:
        raise ReminderSourceNotFoundError(f"Interview {interview_id} not found")
    db.delete(interview)
    db.commit()
    ledger.delete(db, INTERVIEW, interview_id)


# ── applications ─────────────────────────────────────────────────


def delete_job_application(
    db: Session,
    user_id: str,
    job_application_id: str,
    ledger: ScheduledEmailService | None = None,
) -> None:
    """Remove an application with its contacts, interviews and ledger entries."""
    ledger = ledger or ScheduledEmailService()
    application = _application_for_user(db, user_id, job_application_id)
    contacts = db.exec(
        select(ApplicationContact).where(
            ApplicationContact.job_application_id == job_application_id
        )
    ).all()
    interviews = db.exec(
        select(Interview).where(Interview.job_application_id == job_application_id)
    ).all()
    for record in (*contacts, *interviews):
        db.delete(record)
    db.delete(application)
    db.commit()
    removed = ledger.delete_for_application(db, job_application_id)
    logger.info(
        "Deleted application %s with %d contact(s), %d interview(s), %d ledger entr(ies)",
        job_application_id,
        len(contacts),
        len(interviews),
        removed,
    )
