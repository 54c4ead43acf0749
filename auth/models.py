"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, providers, and the reconciler do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime

from auth.permissions import Permission

MAIN_USER_ID = 1
DEFAULT_AVATAR = "/os_logo_square.png"


def gravatar_url(email: str, size: int = 200) -> str:
    """Return the Gravatar URL used as the default avatar for local users."""
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()  # noqa: S324 -- Gravatar key, not security
    return f"https://www.gravatar.com/avatar/{digest}?default=mm&size={size}"


@dataclass
class User:
    """A local identity record.

    id=1 is always the first-created administrator ("main" user). The main
    user's Plex account owns the shared media server, so AccessPolicy checks
    other Plex accounts against it.

    password is None for provider-only users. A user is "local" iff it has a
    password, and a "Plex user" iff plex_id is set.

    reset_password_guid and recovery_link_expiration_date are written together
    by a reset request. Consuming the link clears only the expiration, which
    is enough to invalidate the guid.
    """

    email: str
    permissions: int = int(Permission.NONE)
    id: int | None = None
    username: str | None = None  # optional local display name
    password: str | None = None  # bcrypt hash
    avatar: str = DEFAULT_AVATAR
    plex_id: int | None = None
    plex_token: str | None = None
    plex_username: str | None = None
    jellyfin_user_id: str | None = None
    jellyfin_username: str | None = None
    jellyfin_auth_token: str | None = None
    jellyfin_device_id: str | None = None
    reset_password_guid: str | None = None
    recovery_link_expiration_date: datetime | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_local_user(self) -> bool:
        return self.password is not None

    @property
    def is_plex_user(self) -> bool:
        return self.plex_id is not None

    @property
    def is_main_user(self) -> bool:
        return self.id == MAIN_USER_ID


@dataclass
class ProviderAccount:
    """Normalized account identity returned by a provider (not persisted).

    provider is "local", "plex", or "jellyfin". id is the provider's stable
    user id: an int for plex.tv, a GUID string for Jellyfin/Emby.

    server_id, device_id, and image_tag are only filled in by the
    Jellyfin/Emby provider.
    """

    provider: str
    id: int | str | None
    username: str
    email: str | None = None
    thumb: str | None = None
    auth_token: str | None = None
    server_id: str | None = None
    device_id: str | None = None
    image_tag: str | None = None


@dataclass
class AppSettings:
    """Runtime media-server settings (single app_settings row).

    Read fresh from the store on each request and passed explicitly to the
    reconciler. The only write on the authentication path is the Jellyfin
    first-run bootstrap, which fills jellyfin_hostname and jellyfin_server_id.
    """

    local_login: bool = True
    new_plex_login: bool = True  # "new logins permitted" for Plex and Jellyfin alike
    default_permissions: int = int(Permission.REQUEST)
    media_server_type: str = "plex"  # "plex", "jellyfin", "emby"
    plex_machine_id: str = ""
    jellyfin_hostname: str = ""
    jellyfin_external_hostname: str = ""
    jellyfin_server_id: str = ""
