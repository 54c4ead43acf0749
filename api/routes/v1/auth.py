"""
api/routes/v1/auth.py -- Sign-in, sign-out, and password reset endpoints.

Routes:
  GET  /api/v1/auth/me                    -- current user (requires session)
  POST /api/v1/auth/plex                  -- sign in / link with a plex.tv token
  GET  /api/v1/auth/plex/unlink           -- remove the Plex link (requires session)
  POST /api/v1/auth/jellyfin              -- sign in with Jellyfin/Emby credentials
  POST /api/v1/auth/local                 -- sign in with email + password
  POST /api/v1/auth/logout                -- clear the session cookie
  POST /api/v1/auth/reset-password        -- request a reset link (always 200)
  POST /api/v1/auth/reset-password/{guid} -- set a new password from a link

Handlers stay thin: read settings, call the reconciler or reset service,
bind the session, project the user. Every failure is an AuthError and is
rendered by the handler in api/main.py.

Security:
  [H2] Credential endpoints are rate-limited per IP (Settings.login_rate_limit).
  [M5] Cache-Control: no-store on responses that carry a session.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    JellyfinAuthRequest,
    LocalAuthRequest,
    PlexAuthRequest,
    ResetPasswordConfirm,
    ResetPasswordRequest,
    StatusResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, require_session, try_get_current_user
from auth.errors import InternalError
from auth.models import User
from auth.reconciler import IdentityReconciler
from auth.reset import PasswordResetService
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import get_settings

_LOGIN_LIMIT = get_settings().login_rate_limit

# Auth policy:
# - GET  /auth/me:                   requires session (require_session)
# - GET  /auth/plex/unlink:          requires session (get_current_user)
# - everything else:                 public -- these endpoints create sessions
router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _current_user_id(request: Request) -> int | None:
    user = try_get_current_user(request)
    return user.id if user is not None else None


def _signed_in(request: Request, user: User) -> JSONResponse:
    """Bind the session to user and return its public projection."""
    sessions: SessionManager = request.app.state.sessions
    resp = JSONResponse(status_code=200, content=UserResponse.from_user(user).model_dump(by_alias=True))
    sessions.bind(resp, user)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, user_id: int = Depends(require_session)) -> UserResponse:
    """Return the signed-in user. 500 if the session points at a vanished user."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(user_id)
    if user is None:
        raise InternalError("Please sign in.")
    return UserResponse.from_user(user)


@router.post("/auth/logout", response_model=StatusResponse)
def logout(request: Request) -> JSONResponse:
    sessions: SessionManager = request.app.state.sessions
    resp = JSONResponse(content=StatusResponse().model_dump())
    sessions.destroy(resp)
    return resp


# ---------------------------------------------------------------------------
# Provider sign-in
# ---------------------------------------------------------------------------


@limiter.limit(_LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/plex", response_model=UserResponse)
def plex_login(request: Request, body: PlexAuthRequest) -> JSONResponse:
    """Sign in with a plex.tv token, or link Plex to the already signed-in user."""
    reconciler: IdentityReconciler = request.app.state.reconciler
    user_store: UserStore = request.app.state.user_store
    user = reconciler.login_plex(
        body.auth_token,
        user_store.get_app_settings(),
        current_user_id=_current_user_id(request),
        ip=_client_ip(request),
    )
    return _signed_in(request, user)


@router.get("/auth/plex/unlink", status_code=204)
def plex_unlink(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Remove the Plex link. Only allowed for users with a local password."""
    reconciler: IdentityReconciler = request.app.state.reconciler
    reconciler.unlink_plex(current_user.id)
    return Response(status_code=204)


@limiter.limit(_LOGIN_LIMIT)  # [H2]
@router.post("/auth/jellyfin", response_model=UserResponse)
def jellyfin_login(request: Request, body: JellyfinAuthRequest) -> JSONResponse:
    """Sign in with Jellyfin/Emby credentials.

    406 CREDENTIAL_ERROR_ADD_EMAIL tells the client to ask for an email and
    resubmit; it is only returned when the sign-in would create a new user.
    """
    reconciler: IdentityReconciler = request.app.state.reconciler
    user_store: UserStore = request.app.state.user_store
    user = reconciler.login_jellyfin(
        body.username,
        body.password,
        user_store.get_app_settings(),
        hostname=body.hostname,
        email=body.email,
        current_user_id=_current_user_id(request),
        ip=_client_ip(request),
    )
    return _signed_in(request, user)


@limiter.limit(_LOGIN_LIMIT)  # [H2]
@router.post("/auth/local", response_model=UserResponse)
def local_login(request: Request, body: LocalAuthRequest) -> JSONResponse:
    """Sign in with email and password.

    Wrong password and unknown email both answer 403 so the response does
    not reveal which accounts exist.
    """
    reconciler: IdentityReconciler = request.app.state.reconciler
    user_store: UserStore = request.app.state.user_store
    user = reconciler.login_local(body.email, body.password, user_store.get_app_settings(), ip=_client_ip(request))
    return _signed_in(request, user)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_LOGIN_LIMIT)  # [H2]
@router.post("/auth/reset-password", response_model=StatusResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> StatusResponse:
    resets: PasswordResetService = request.app.state.resets
    resets.request_reset(body.email, ip=_client_ip(request))
    return StatusResponse()


@limiter.limit(_LOGIN_LIMIT)  # [H2]
@router.post("/auth/reset-password/{guid}", response_model=StatusResponse)
def reset_password_confirm(request: Request, guid: str, body: ResetPasswordConfirm) -> StatusResponse:
    resets: PasswordResetService = request.app.state.resets
    resets.consume_reset(guid, body.password, ip=_client_ip(request))
    return StatusResponse()
