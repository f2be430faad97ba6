"""
auth/notify.py -- Outbound email for the forgot-password flow.

EmailNotifier sends over SMTP with STARTTLS. With no SMTP_HOST configured it
only logs that a message would have been sent, which keeps local development
and tests free of network calls.

Callers treat a send as fire-and-forget: auth.reset.request_reset() logs any
exception and still returns the generic response.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("bastion.notify")

_RESET_BODY = """Hello, {username}!

A password reset was requested for your account.

To choose a new password, open this link:
{link}

The link is valid for {hours} hour(s) and can be used once.

If you did not request a reset, ignore this message.
"""


class EmailNotifier:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def reset_link(self, token: str) -> str:
        return f"{self._settings.frontend_url.rstrip('/')}/reset-password?{urlencode({'token': token})}"

    def send_password_reset(self, address: str, username: str, token: str) -> None:
        message = EmailMessage()
        message["Subject"] = f"Password reset - {self._settings.smtp_from_name}"
        message["From"] = formataddr((self._settings.smtp_from_name, self._settings.smtp_from_email))
        message["To"] = address
        message.set_content(
            _RESET_BODY.format(
                username=username,
                link=self.reset_link(token),
                hours=self._settings.reset_token_hours,
            )
        )
        self._send(message)

    def _send(self, message: EmailMessage) -> None:
        if not self._settings.smtp_host:
            logger.info("SMTP not configured; skipping email to %s (%s)", message["To"], message["Subject"])
            return
        with smtplib.SMTP(self._settings.smtp_host, self._settings.smtp_port, timeout=10) as smtp:
            smtp.starttls()
            if self._settings.smtp_username:
                smtp.login(self._settings.smtp_username, self._settings.smtp_password)
            smtp.send_message(message)
        logger.info("Sent email to %s (%s)", message["To"], message["Subject"])
