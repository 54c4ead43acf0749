"""
auth/jellyfin.py -- Jellyfin/Emby server login client.

Both servers expose POST /Users/AuthenticateByName and accept the
MediaBrowser authorization header, so one client serves both. The header
carries a device id; reusing the same id on every login keeps a single device
registration per local user on the remote server instead of one per sign-in.
"""

from __future__ import annotations

import base64
import logging

import requests

from auth.errors import ProviderUnauthorized, ProviderUnavailable
from auth.models import ProviderAccount
from core.config import get_settings

logger = logging.getLogger("marquee.auth.jellyfin")

_session = requests.Session()
_session.max_redirects = 3

_settings = get_settings()


def derive_device_id(username: str) -> str:
    """Deterministic device id for a user with no stored one yet."""
    return base64.b64encode(f"BOT_marquee_{username}".encode("utf-8")).decode("ascii")


def clean_hostname(hostname: str) -> str:
    """Strip whitespace and a single trailing slash."""
    host = (hostname or "").strip()
    return host[:-1] if host.endswith("/") else host


def _auth_header(device_id: str) -> str:
    product = _settings.plex_product_name
    return f'MediaBrowser Client="{product}", Device="{product}", DeviceId="{device_id}", Version="1.0"'


class JellyfinClient:
    """Client bound to one server hostname and one device id."""

    def __init__(self, hostname: str, device_id: str, timeout: float | None = None) -> None:
        self.hostname = clean_hostname(hostname)
        self.device_id = device_id
        self.timeout = timeout if timeout is not None else _settings.provider_timeout_seconds

    def login(self, username: str, password: str | None) -> ProviderAccount:
        """Authenticate against the server and return the normalized account.

        Raises:
            ProviderUnauthorized: the server rejected the credentials (401/403).
            ProviderUnavailable:  network failure, timeout, or malformed reply.
        """
        auth = _auth_header(self.device_id)
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": auth,
            "X-Emby-Authorization": auth,
        }
        url = f"{self.hostname}/Users/AuthenticateByName"
        try:
            resp = _session.post(
                url,
                json={"Username": username, "Pw": password or ""},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Media server unreachable: {e.__class__.__name__}") from e

        if resp.status_code in (401, 403):
            raise ProviderUnauthorized("Unauthorized")
        if not resp.ok:
            raise ProviderUnavailable(f"Media server returned HTTP {resp.status_code}")

        try:
            data = resp.json()
            user = data["User"]
            user_id = user["Id"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderUnavailable("Unexpected media server login response") from e

        return ProviderAccount(
            provider="jellyfin",
            id=user_id,
            username=user.get("Name") or username,
            auth_token=data.get("AccessToken"),
            server_id=user.get("ServerId") or data.get("ServerId"),
            device_id=self.device_id,
            image_tag=user.get("PrimaryImageTag"),
        )
