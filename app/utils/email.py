import logging
from typing import Protocol

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> None: ...


class ConsoleEmailSender:
    """Development sender: logs instead of delivering."""

    def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info("[email][console] to=%s subject=%r body=%s", to, subject, html_body[:200])


class SendGridEmailSender:
    def __init__(self, api_key: str, from_email: str, timeout: float) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout

    def send(self, to: str, subject: str, html_body: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_body}],
        }
        resp = requests.post(
            SENDGRID_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            timeout=self.timeout,
        )
        if resp.status_code not in (200, 201, 202):
            raise RuntimeError(f"SendGrid rejected email: status={resp.status_code} body={resp.text[:200]}")
        logger.info("[email][sendgrid] sent to=%s***", to[:3])


def build_email_sender() -> EmailSender:
    if settings.sendgrid_api_key:
        return SendGridEmailSender(settings.sendgrid_api_key, settings.email_from, settings.notification_timeout_seconds)
    return ConsoleEmailSender()
