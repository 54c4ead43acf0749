"""
auth/sessions.py -- SessionManager: bind and destroy the session <-> user link.

A session is a signed JWT in the httpOnly access_token cookie (an
Authorization: Bearer header is accepted for API clients). It carries exactly
one claim of interest, the local user id, so there is no server-side session
state to clean up.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from auth.errors import InternalError
from auth.models import User
from auth.tokens import SESSION_COOKIE, create_session_token, decode_session_token, set_auth_cookie

logger = logging.getLogger("marquee.auth.sessions")


class SessionManager:
    def bind(self, response: Response, user: User) -> None:
        """Associate the response's session with user.id."""
        set_auth_cookie(response, create_session_token(user.id))

    def destroy(self, response: Response) -> None:
        try:
            response.delete_cookie(SESSION_COOKIE)
        except Exception as e:  # noqa: BLE001 -- any failure here is reported as a 500
            logger.error("Failed to destroy session: %s", e)
            raise InternalError() from e

    def current_user_id(self, request: Request) -> int | None:
        """Return the user id bound to the request's session, or None."""
        token: str | None = request.cookies.get(SESSION_COOKIE)
        if not token:
            auth_header = request.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                token = auth_header[7:]
        if not token:
            return None
        return decode_session_token(token)
