"""
auth/reset.py -- Password reset links.

Security:
  request_reset() behaves identically whether or not the email exists, so
  the endpoint cannot be used to enumerate accounts.

  consume_reset() answers "unknown guid" and "expired guid" with the same
  message. Password length is validated before the guid is looked up.

  A consumed link keeps its guid but loses its expiration date, which is
  enough to make every later use fail as "expired".
"""

from __future__ import annotations

import logging
import smtplib
import uuid
from datetime import timedelta

from auth.errors import ValidationError
from auth.notify import ResetNotifier
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import now_utc

logger = logging.getLogger("marquee.auth.reset")

MIN_PASSWORD_LENGTH = 8
INVALID_LINK_MESSAGE = "Invalid password reset link."


class PasswordResetService:
    def __init__(self, store: UserStore, notifier: ResetNotifier, app_url: str, ttl_hours: int = 24) -> None:
        self._store = store
        self._notifier = notifier
        self._app_url = app_url.rstrip("/")
        self._ttl = timedelta(hours=ttl_hours)

    def request_reset(self, email: str | None, ip: str | None = None) -> None:
        if not email:
            raise ValidationError("Email address required.")
        user = self._store.get_by_email(email)
        if user is None:
            logger.warning("Password reset requested for unknown email (ip=%s email=%s)", ip, email)
            return

        user.reset_password_guid = str(uuid.uuid4())
        user.recovery_link_expiration_date = now_utc() + self._ttl
        self._store.save_user(user)

        reset_url = f"{self._app_url}/resetpassword/{user.reset_password_guid}"
        try:
            self._notifier.send_reset(user, reset_url)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send password reset link (ip=%s email=%s): %s", ip, email, e)
            return
        logger.info("Successfully sent password reset link (ip=%s email=%s)", ip, email)

    def consume_reset(self, guid: str, password: str | None, ip: str | None = None) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            logger.warning("Failed password reset attempt using invalid new password (ip=%s guid=%s)", ip, guid)
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")

        user = self._store.get_by_reset_guid(guid)
        if user is None:
            logger.warning("Failed password reset attempt using invalid recovery link (ip=%s guid=%s)", ip, guid)
            raise ValidationError(INVALID_LINK_MESSAGE)

        expires = user.recovery_link_expiration_date
        if expires is None or expires <= now_utc():
            logger.warning(
                "Failed password reset attempt using expired recovery link (ip=%s guid=%s email=%s)",
                ip,
                guid,
                user.email,
            )
            raise ValidationError(INVALID_LINK_MESSAGE)

        user.password = hash_password(password)
        user.recovery_link_expiration_date = None
        self._store.save_user(user)
        logger.info("Successfully reset password (ip=%s guid=%s email=%s)", ip, guid, user.email)
