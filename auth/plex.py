"""
auth/plex.py -- plex.tv account API client.

Three capabilities are used by the sign-in flows:
  get_user()            -- resolve an auth token to the Plex account behind it.
  get_users()           -- the shared-user list of the token's account (only
                           meaningful for the main user's token).
  check_user_access(id) -- whether a Plex account has been shared the
                           configured media server (plex_machine_id).

Failures are normalized into ProviderError subclasses so the reconciler never
has to know about requests or XML. No retries: a provider failure fails the
sign-in attempt, and every call carries an explicit timeout.
"""

from __future__ import annotations

import logging
import uuid
import xml.etree.ElementTree as ET

import requests

from auth.errors import ProviderError, ProviderUnauthorized, ProviderUnavailable
from auth.models import ProviderAccount
from core.config import get_settings

logger = logging.getLogger("marquee.auth.plex")

PLEX_ACCOUNT_URL = "https://plex.tv/users/account.json"
PLEX_USERS_URL = "https://plex.tv/api/users"

# Module-level session shared across all plex.tv calls for connection pooling.
_session = requests.Session()
_session.max_redirects = 3

_settings = get_settings()
_CLIENT_IDENTIFIER = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{_settings.plex_product_name}-plex-client"))


def _headers(token: str) -> dict[str, str]:
    return {
        "Accept": "application/json",
        "X-Plex-Token": token,
        "X-Plex-Product": _settings.plex_product_name,
        "X-Plex-Version": "1.0",
        "X-Plex-Client-Identifier": _CLIENT_IDENTIFIER,
        "X-Plex-Platform": "Web",
    }


def _to_int(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class PlexTvClient:
    """Client bound to one Plex auth token.

    Args:
        auth_token: token of the account being resolved (sign-in) or of the
                    main user (shared-list and access checks).
        machine_id: machineIdentifier of the configured Plex server. Only
                    check_user_access() needs it.
        timeout:    per-request timeout in seconds; defaults to
                    Settings.provider_timeout_seconds.
    """

    def __init__(self, auth_token: str, machine_id: str = "", timeout: float | None = None) -> None:
        self.auth_token = auth_token
        self.machine_id = machine_id
        self.timeout = timeout if timeout is not None else _settings.provider_timeout_seconds

    def _get(self, url: str) -> requests.Response:
        try:
            resp = _session.get(url, headers=_headers(self.auth_token), timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderUnavailable(f"plex.tv unreachable: {e.__class__.__name__}") from e
        if resp.status_code in (401, 403):
            raise ProviderUnauthorized("plex.tv rejected the auth token")
        if not resp.ok:
            raise ProviderUnavailable(f"plex.tv returned HTTP {resp.status_code}")
        return resp

    def get_user(self) -> ProviderAccount:
        """Return the account identity behind this client's token."""
        resp = self._get(PLEX_ACCOUNT_URL)
        try:
            data = resp.json()["user"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderUnavailable("Unexpected plex.tv account response") from e
        return ProviderAccount(
            provider="plex",
            id=_to_int(str(data["id"])) if data.get("id") is not None else None,
            username=data.get("username") or data.get("title") or "",
            email=data.get("email"),
            thumb=data.get("thumb"),
            auth_token=data.get("authToken") or self.auth_token,
        )

    def _shared_users(self) -> list[tuple[ProviderAccount, set[str]]]:
        """Parse /api/users into (account, shared server machine ids) pairs."""
        resp = self._get(PLEX_USERS_URL)
        try:
            root = ET.fromstring(resp.content)
        except ET.ParseError as e:
            raise ProviderUnavailable("Unexpected plex.tv users response") from e
        shared: list[tuple[ProviderAccount, set[str]]] = []
        for elem in root.findall("User"):
            account = ProviderAccount(
                provider="plex",
                id=_to_int(elem.get("id")),
                username=elem.get("username") or elem.get("title") or "",
                email=elem.get("email") or None,
                thumb=elem.get("thumb"),
            )
            servers = {s.get("machineIdentifier", "") for s in elem.findall("Server")}
            shared.append((account, servers))
        return shared

    def get_users(self) -> list[ProviderAccount]:
        """Return the accounts on this token's shared-user list."""
        return [account for account, _servers in self._shared_users()]

    def check_user_access(self, account_id: int) -> bool:
        """Return True if account_id has been shared the configured server.

        Never raises: a missing machine id, an unknown account, or a provider
        failure all log and return False, which AccessPolicy treats as denial.
        """
        if not self.machine_id:
            logger.error("Plex access check skipped: no Plex server machine id configured")
            return False
        try:
            for account, servers in self._shared_users():
                if account.id == account_id:
                    return self.machine_id in servers
        except ProviderError as e:
            logger.error("Plex access check failed for plex_id=%s: %s", account_id, e)
            return False
        logger.warning("Plex account %s is not on the main account's shared list", account_id)
        return False
