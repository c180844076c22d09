"""
Small SMTP helpers shared by the service and the operator scripts.
"""
from __future__ import annotations

import logging
import smtplib
import traceback
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Sequence

from core.config import Settings

log = logging.getLogger("app.email")

SMTP_TIMEOUT_SECONDS = 20


def send_text_email(settings: Settings, to_email: str, subject: str, body: str) -> None:
    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    # Gmail rewrites or blocks a From that differs from the authenticated user
    msg["From"] = settings.email_address
    msg["To"] = to_email

    if settings.smtp_port == 465:
        server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
    else:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
    with server:
        if settings.smtp_port != 465:
            server.starttls()
        server.login(settings.email_address, settings.email_password)
        server.sendmail(msg["From"], [to_email], msg.as_string())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationSender:
    """Status mails to the operator's own inbox. Only send_test raises."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.email_address and self.settings.email_password)

    def _deliver(self, subject: str, body: str) -> bool:
        try:
            send_text_email(self.settings, self.settings.notify_email, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            log.error("Notification failed", extra={"subject": subject, "error": str(e)})
            return False
        log.info("Notification sent", extra={"subject": subject, "to": self.settings.notify_email})
        return True

    def send_success(self, job_keys: Sequence[str], elapsed_ms: int) -> bool:
        body = (
            f"Success! Applied to {len(job_keys)} jobs in {elapsed_ms}ms.\n\n"
            f"Job IDs: {', '.join(job_keys)}\n"
            f"Response time: {elapsed_ms}ms\n"
            f"Timestamp: {_now()}\n"
        )
        return self._deliver(f"✅ Job Applications Successful - {len(job_keys)} jobs", body)

    def send_error(self, error: BaseException, job_keys: Sequence[str]) -> bool:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        body = (
            "Error occurred while processing jobs:\n\n"
            f"Job IDs: {', '.join(job_keys)}\n"
            f"Error: {error}\n"
            f"Stack: {stack}\n"
            f"Timestamp: {_now()}\n"
        )
        return self._deliver(f"❌ Job Application Error - {len(job_keys)} jobs failed", body)

    def send_test(self) -> None:
        body = (
            "This is a test email from your Umzugshilfe job application bot.\n\n"
            f"SMTP Host: {self.settings.smtp_host}\n"
            f"SMTP Port: {self.settings.smtp_port}\n"
            f"Email: {self.settings.email_address}\n\n"
            f"Timestamp: {_now()}\n"
        )
        send_text_email(self.settings, self.settings.notify_email, "🧪 Test Email - Umzugshilfe Bot", body)
        log.info("Test email sent", extra={"to": self.settings.notify_email})
