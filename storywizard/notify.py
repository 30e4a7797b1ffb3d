"""Operator notifications for failures that need a human (image generation errors).

    LogNotifier    — logs at ERROR level. Default when no SMTP host is set.
    EmailNotifier  — sends a plain-text email to the maintenance list via SMTP.

Use notify_maintenance_error() from flows: it never raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def __call__(self, subject: str, body: str) -> None: ...


class LogNotifier:
    async def __call__(self, subject: str, body: str) -> None:
        logger.error(f"[maintenance] {subject}\n{body}")


class EmailNotifier:
    """Send mail through an SMTP relay (STARTTLS when a user is configured)."""

    def __init__(
        self,
        host: str,
        recipients: list[str],
        sender: str,
        port: int = 587,
        user: str = "",
        password: str = "",
    ) -> None:
        self._host = host
        self._port = port
        self._recipients = recipients
        self._sender = sender
        self._user = user
        self._password = password

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=30) as smtp:
            if self._user:
                smtp.starttls()
                smtp.login(self._user, self._password)
            smtp.send_message(message)

    async def __call__(self, subject: str, body: str) -> None:
        if not self._recipients:
            logger.warning(f"[maintenance] No recipients configured; dropping: {subject}")
            return
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._sender
        message["To"] = ", ".join(self._recipients)
        message.set_content(body)
        await asyncio.to_thread(self._send, message)


def build_notifier(settings: dict[str, Any]) -> Notifier:
    """Pick a notifier from the `notifications` config group."""
    if settings.get("smtp_host"):
        return EmailNotifier(
            host=settings["smtp_host"],
            port=int(settings.get("smtp_port") or 587),
            recipients=list(settings.get("maintenance_emails") or []),
            sender=settings.get("sender") or "storywizard@localhost",
            user=settings.get("smtp_user", ""),
            password=settings.get("smtp_password", ""),
        )
    return LogNotifier()


async def notify_maintenance_error(
    notifier: Notifier,
    flow_name: str,
    error_message: str,
    diagnostics: dict[str, Any] | None = None,
) -> None:
    """Report a flow failure to operators. Errors while notifying are logged only."""
    subject = f"[StoryWizard] {flow_name} failed"
    body = f"Flow: {flow_name}\nError: {error_message}\n"
    if diagnostics:
        body += "\nDiagnostics:\n" + json.dumps(diagnostics, indent=2, default=str)
    try:
        await notifier(subject, body)
    except Exception as e:
        logger.warning(f"[maintenance] Failed to send notification for {flow_name}: {e}")
