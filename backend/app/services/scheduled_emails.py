"""Ledger of reminder emails: what is coming up, what went out, what failed.

The ledger mirrors the reminder fields on contacts and interviews. It drives
read-side "upcoming" views and operator audit; the ``*_sent_at`` fields on the
source records stay the authority on whether a reminder was sent.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlmodel import Session, col, select

from app.models.job import as_utc, utcnow
from app.models.scheduled_email import (
    ScheduledEmail,
    ScheduledEmailRead,
    ScheduledEmailStatus,
    UpcomingScheduledEmail,
)

logger = logging.getLogger(__name__)

_UPSERT_FIELDS = ("type", "job_application_id", "user_id", "scheduled_for", "meta")


class ScheduledEmailService:
    @staticmethod
    def _find(db: Session, parent_type: str, parent_id: str) -> ScheduledEmail | None:
        return db.exec(
            select(ScheduledEmail)
            .where(ScheduledEmail.parent_type == parent_type)
            .where(ScheduledEmail.parent_id == parent_id)
        ).first()

    def upsert(
        self,
        db: Session,
        parent_type: str,
        parent_id: str,
        *,
        type: str,
        job_application_id: str,
        user_id: str,
        scheduled_for: datetime,
        meta: dict[str, Any] | None = None,
    ) -> ScheduledEmail:
        """Create or replace the entry for a reminder source.

        A changed reminder instant is a new reminder, so the entry goes back
        to ``pending`` with any previous outcome cleared.
        """
        values = {
            "type": type,
            "job_application_id": job_application_id,
            "user_id": user_id,
            "scheduled_for": as_utc(scheduled_for),
            "meta": dict(meta or {}),
        }
        entry = self._find(db, parent_type, parent_id)
        if entry is None:
            entry = ScheduledEmail(parent_type=parent_type, parent_id=parent_id, **values)
        else:
            for name in _UPSERT_FIELDS:
                setattr(entry, name, values[name])
            entry.updated_at = utcnow()
        entry.status = ScheduledEmailStatus.PENDING.value
        entry.sent_at = None
        entry.failure_message = None
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry

    def delete(self, db: Session, parent_type: str, parent_id: str) -> bool:
        entry = self._find(db, parent_type, parent_id)
        if entry is None:
            return False
        db.delete(entry)
        db.commit()
        return True

    def delete_for_application(self, db: Session, job_application_id: str) -> int:
        entries = db.exec(
            select(ScheduledEmail).where(
                ScheduledEmail.job_application_id == job_application_id
            )
        ).all()
        for entry in entries:
            db.delete(entry)
        db.commit()
        return len(entries)

    def list_upcoming(
        self, db: Session, user_id: str, limit: int = 10
    ) -> list[UpcomingScheduledEmail]:
        """Pending entries for a user, soonest first."""
        entries = db.exec(
            select(ScheduledEmail)
            .where(ScheduledEmail.user_id == user_id)
            .where(ScheduledEmail.status == ScheduledEmailStatus.PENDING.value)
            .order_by(col(ScheduledEmail.scheduled_for).asc())
            .limit(limit)
        ).all()
        return [UpcomingScheduledEmail.model_validate(entry) for entry in entries]

    def list_failed(self, db: Session, limit: int = 50) -> list[ScheduledEmailRead]:
        """Most recently failed entries, for operator audit."""
        entries = db.exec(
            select(ScheduledEmail)
            .where(ScheduledEmail.status == ScheduledEmailStatus.FAILED.value)
            .order_by(col(ScheduledEmail.updated_at).desc())
            .limit(limit)
        ).all()
        return [ScheduledEmailRead.model_validate(entry) for entry in entries]

    def mark_sent(
        self,
        db: Session,
        parent_type: str,
        parent_id: str,
        sent_at: datetime | None = None,
    ) -> ScheduledEmail | None:
        entry = self._find(db, parent_type, parent_id)
        if entry is None:
            return None
        entry.status = ScheduledEmailStatus.SENT.value
        entry.sent_at = as_utc(sent_at) if sent_at else utcnow()
        entry.failure_message = None
        entry.updated_at = utcnow()
        db.add(entry)
        db.commit()
        return entry

    def mark_failed(
        self, db: Session, parent_type: str, parent_id: str, message: str
    ) -> ScheduledEmail | None:
        entry = self._find(db, parent_type, parent_id)
        if entry is None:
            return None
        entry.status = ScheduledEmailStatus.FAILED.value
        entry.failure_message = message[:2000]
        entry.updated_at = utcnow()
        db.add(entry)
        db.commit()
        return entry
