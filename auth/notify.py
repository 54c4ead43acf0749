"""
auth/notify.py -- Delivery of password reset links.

Two notifiers share one send_reset() interface:
  LogNotifier  -- writes the link to the log; the default when no SMTP host
                  is configured (local installs, tests).
  SMTPNotifier -- sends a plain-text email through an SMTP relay.

build_notifier() picks one from Settings.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from auth.models import User
from core.config import Settings

logger = logging.getLogger("marquee.auth.notify")


class ResetNotifier(Protocol):
    def send_reset(self, user: User, reset_url: str) -> None: ...


class LogNotifier:
    def send_reset(self, user: User, reset_url: str) -> None:
        logger.info("Password reset link for user_id=%s: %s", user.id, reset_url)


class SMTPNotifier:
    def __init__(self, host: str, port: int, sender: str, timeout: float = 10.0) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._timeout = timeout

    def send_reset(self, user: User, reset_url: str) -> None:
        message = EmailMessage()
        message["Subject"] = "Password reset"
        message["From"] = self._sender
        message["To"] = user.email
        message.set_content(
            "A password reset was requested for your account.\n\n"
            f"Set a new password here: {reset_url}\n\n"
            "If you did not request this, you can ignore this email."
        )
        with smtplib.SMTP(host=self._host, port=self._port, timeout=self._timeout) as conn:
            conn.send_message(message)


def build_notifier(settings: Settings) -> ResetNotifier:
    if settings.smtp_host:
        return SMTPNotifier(settings.smtp_host, settings.smtp_port, settings.smtp_sender)
    return LogNotifier()
