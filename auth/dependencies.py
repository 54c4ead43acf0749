"""
auth/dependencies.py -- FastAPI Depends() helpers for the current session.

try_get_current_user() is the soft variant (returns None when there is no
valid session). get_current_user() wraps it and raises AccessDenied, which
the API renders as 403, matching the web client's "requires sign-in" guard.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AccessDenied
from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore


def try_get_current_user(request: Request) -> User | None:
    """Resolve the session cookie / Bearer token to a stored user, or None. Never raises."""
    sessions: SessionManager = request.app.state.sessions
    user_store: UserStore = request.app.state.user_store
    user_id = sessions.current_user_id(request)
    if user_id is None:
        return None
    return user_store.get_by_id(user_id)


def require_session(request: Request) -> int:
    """Require a valid session token; return the user id it is bound to."""
    sessions: SessionManager = request.app.state.sessions
    user_id = sessions.current_user_id(request)
    if user_id is None:
        raise AccessDenied("You do not have permission to access this endpoint.")
    return user_id


def get_current_user(request: Request) -> User:
    """Require a signed-in session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise AccessDenied("You do not have permission to access this endpoint.")
    return user
