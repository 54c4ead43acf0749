"""
API request and response models for Marquee REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire names are camelCase (authToken, plexId, ...) because that is what the
web client sends and reads. Request fields are optional on purpose: a missing
field is reported by the route as a ValidationError with the message the
client expects, not as a generic 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import User

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PlexAuthRequest(BaseModel):
    """Request body for POST /api/v1/auth/plex."""

    model_config = _CAMEL

    auth_token: Optional[str] = Field(default=None, max_length=255)


class JellyfinAuthRequest(BaseModel):
    """Request body for POST /api/v1/auth/jellyfin.

    hostname is only honoured while no media server is configured (first
    run). email is only required when the sign-in would create a new user.
    The password is forwarded to the media server exactly as typed.
    """

    model_config = _CAMEL

    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = None
    hostname: Optional[str] = Field(default=None, max_length=2048)
    email: Optional[str] = Field(default=None, max_length=255)

    @field_validator("username", "hostname", "email")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class LocalAuthRequest(BaseModel):
    """Request body for POST /api/v1/auth/local."""

    model_config = _CAMEL

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    model_config = _CAMEL

    email: Optional[str] = Field(default=None, max_length=255)


class ResetPasswordConfirm(BaseModel):
    """Request body for POST /api/v1/auth/reset-password/{guid}."""

    model_config = _CAMEL

    password: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public projection of a User.

    Password hash, provider tokens, and reset link fields are never part of
    this model, so they cannot leak through serialization.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    username: Optional[str]
    display_name: str
    permissions: int
    avatar: str
    user_type: str
    plex_id: Optional[int]
    plex_username: Optional[str]
    jellyfin_user_id: Optional[str]
    jellyfin_username: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory method -- the domain-to-wire mapping lives with the wire model."""
        if user.is_plex_user:
            user_type = "plex"
        elif user.jellyfin_user_id:
            user_type = "jellyfin"
        else:
            user_type = "local"
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            display_name=user.username or user.plex_username or user.jellyfin_username or user.email,
            permissions=user.permissions,
            avatar=user.avatar,
            user_type=user_type,
            plex_id=user.plex_id,
            plex_username=user.plex_username,
            jellyfin_user_id=user.jellyfin_user_id,
            jellyfin_username=user.jellyfin_username,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class StatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response.

    status repeats the HTTP status code; code is machine-readable; message is
    safe to show to the user.
    """

    model_config = ConfigDict(frozen=True)

    status: int
    code: str
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
