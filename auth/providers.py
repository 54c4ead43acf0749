"""
auth/providers.py -- AuthProvider capability and its three variants.

Each provider turns a credential assertion into a normalized ProviderAccount.
That is the only provider-specific step before reconciliation; matching,
policy, persistence, and session binding are shared by IdentityReconciler.

  LocalProvider    -- the asserted email is the identity; the password is
                      checked against the store by the reconciler.
  PlexProvider     -- plex.tv account lookup from an auth token.
  JellyfinProvider -- username/password login against a Jellyfin/Emby host.

Client factories are injected so tests (and alternate deployments) can swap
the remote clients without touching the flows.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from auth.jellyfin import JellyfinClient
from auth.models import ProviderAccount
from auth.plex import PlexTvClient

# (auth_token, plex_machine_id) -> client
PlexClientFactory = Callable[[str, str], PlexTvClient]
# (hostname, device_id) -> client
JellyfinClientFactory = Callable[[str, str], JellyfinClient]


@dataclass
class LocalCredentials:
    email: str
    password: str


@dataclass
class PlexCredentials:
    auth_token: str


@dataclass
class JellyfinCredentials:
    username: str
    password: str | None
    hostname: str
    device_id: str


class AuthProvider(Protocol):
    name: str

    def resolve_identity(self, credentials: Any) -> ProviderAccount: ...


class LocalProvider:
    name = "local"

    def resolve_identity(self, credentials: LocalCredentials) -> ProviderAccount:
        email = credentials.email.strip().lower()
        return ProviderAccount(provider=self.name, id=None, username=email, email=email)


class PlexProvider:
    name = "plex"

    def __init__(self, client_factory: PlexClientFactory = PlexTvClient) -> None:
        self.client_factory = client_factory

    def resolve_identity(self, credentials: PlexCredentials) -> ProviderAccount:
        # The machine id is irrelevant for get_user(); only access checks use it.
        account = self.client_factory(credentials.auth_token, "").get_user()
        # Persist the token the user actually signed in with.
        account.auth_token = credentials.auth_token
        return account


class JellyfinProvider:
    name = "jellyfin"

    def __init__(self, client_factory: JellyfinClientFactory = JellyfinClient) -> None:
        self.client_factory = client_factory

    def resolve_identity(self, credentials: JellyfinCredentials) -> ProviderAccount:
        client = self.client_factory(credentials.hostname, credentials.device_id)
        return client.login(credentials.username, credentials.password)
