"""
auth/errors.py -- Tagged error types for the authentication flows.

Every AuthError carries a machine-readable code and the HTTP status the API
layer should answer with, so route handlers never branch on message text.
The api/ exception handler renders them as {"status", "code", "message"}.

Provider clients raise ProviderError subclasses. The reconciler translates
those into AuthErrors at the orchestration boundary.

Status codes intentionally mirror the public contract of the web client:
missing or malformed request fields are 500, not 400.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for failures that map onto an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Something went wrong."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 500
    code = "validation_error"
    default_message = "Invalid request."


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class AccessDenied(AuthError):
    status_code = 403
    code = "access_denied"
    default_message = "Access denied."


class AddEmailRequired(AuthError):
    """A first-time Jellyfin/Emby sign-in needs an email address.

    The client branches on this to re-prompt for an email and resubmit.
    """

    status_code = 406
    code = "add_email_required"
    default_message = "CREDENTIAL_ERROR_ADD_EMAIL"


class InternalError(AuthError):
    status_code = 500
    code = "internal_error"
    default_message = "Something went wrong."


# ---------------------------------------------------------------------------
# Provider client failures
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """A remote media-server identity call failed."""


class ProviderUnauthorized(ProviderError):
    """The provider rejected the supplied credentials or token."""


class ProviderUnavailable(ProviderError):
    """Network failure, timeout, or an unexpected provider response."""
