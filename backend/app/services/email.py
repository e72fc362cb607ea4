"""Reminder email delivery over SMTP."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText

from app.config import Settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when a reminder email could not be handed to the SMTP server."""


@dataclass(frozen=True, slots=True)
class FollowUpReminder:
    contact_name: str
    company_name: str
    job_title: str
    reminder_date_label: str


@dataclass(frozen=True, slots=True)
class InterviewReminder:
    company_name: str
    job_title: str
    interview_type_label: str
    format_label: str
    scheduled_at_label: str


class EmailService:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send_follow_up_reminder(
        self, to: str, recipient_name: str, reminder: FollowUpReminder
    ) -> None:
        subject = f"Follow up with {reminder.contact_name} at {reminder.company_name}"
        body = (
            f"Hi {recipient_name},\n\n"
            f"This is your reminder to follow up with {reminder.contact_name} "
            f"about the {reminder.job_title} role at {reminder.company_name}.\n"
            f"Reminder date: {reminder.reminder_date_label}\n\n"
            f"Good luck!\n{self._settings.app_name}"
        )
        self._send_email(to, subject, body)

    def send_interview_reminder(
        self, to: str, recipient_name: str, reminder: InterviewReminder
    ) -> None:
        subject = f"Interview tomorrow: {reminder.company_name}"
        body = (
            f"Hi {recipient_name},\n\n"
            f"You have a {reminder.interview_type_label} interview "
            f"({reminder.format_label}) for the {reminder.job_title} role "
            f"at {reminder.company_name}.\n"
            f"When: {reminder.scheduled_at_label}\n\n"
            f"Good luck!\n{self._settings.app_name}"
        )
        self._send_email(to, subject, body)

    def _send_email(self, to: str, subject: str, body: str) -> None:
        if not self._settings.smtp_host:
            raise EmailDeliveryError(f"SMTP not configured, cannot send to {to}")

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._settings.smtp_from_email or self._settings.smtp_user
        msg["To"] = to

        try:
            with smtplib.SMTP(
                self._settings.smtp_host, self._settings.smtp_port, timeout=30
            ) as server:
                server.starttls()
                if self._settings.smtp_user:
                    server.login(self._settings.smtp_user, self._settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"Failed to send email to {to}: {exc}") from exc

        logger.info("Reminder email sent to %s: %s", to, subject)
