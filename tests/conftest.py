"""
tests/conftest.py -- Shared test fixtures for Marquee tests.

This module provides:
  - FakePlexTv / FakeJellyfinServer: in-memory stand-ins for the remote
    identity providers. Their client() methods match the client factory
    signatures, so they plug into AccessPolicy, PlexProvider, and
    JellyfinProvider exactly where the real requests-based clients go.
  - RecordingNotifier: captures password reset links instead of mailing them.
  - _make_test_store(): isolated in-memory UserStore per test
  - _patch_lifespan(): wires the test store and fakes into app.state
  - client: TestClient against the real app with the patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Every test gets its own DB name, so first-run (empty table) behaviour can be
exercised in any test.

The env vars must be set before any auth/core/api import: get_settings() is
cached on first call and the limiter reads rate_limit_enabled at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import replace

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_auth_state
from auth.errors import ProviderUnauthorized, ProviderUnavailable
from auth.models import ProviderAccount, User
from auth.policy import AccessPolicy
from auth.providers import JellyfinProvider, PlexProvider
from auth.reconciler import IdentityReconciler
from auth.store import UserStore

MACHINE_ID = "machine-abc"

# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------


class FakePlexTv:
    """plex.tv accounts keyed by auth token, plus the main account's shared list."""

    def __init__(self) -> None:
        self.accounts: dict[str, ProviderAccount] = {}
        self.shared: list[tuple[ProviderAccount, set[str]]] = []
        self.unavailable = False

    def add_account(
        self, token: str, plex_id: int, username: str, email: str | None, thumb: str | None = None
    ) -> ProviderAccount:
        account = ProviderAccount(provider="plex", id=plex_id, username=username, email=email, thumb=thumb)
        self.accounts[token] = account
        return account

    def share(self, account: ProviderAccount, machine_id: str = MACHINE_ID) -> None:
        """Put account on the main user's shared list with access to machine_id."""
        self.shared.append((account, {machine_id}))

    def client(self, auth_token: str, machine_id: str) -> FakePlexClient:
        return FakePlexClient(self, auth_token, machine_id)


class FakePlexClient:
    def __init__(self, tv: FakePlexTv, auth_token: str, machine_id: str) -> None:
        self.tv = tv
        self.auth_token = auth_token
        self.machine_id = machine_id

    def get_user(self) -> ProviderAccount:
        if self.tv.unavailable:
            raise ProviderUnavailable("plex.tv unreachable")
        account = self.tv.accounts.get(self.auth_token)
        if account is None:
            raise ProviderUnauthorized("plex.tv rejected the auth token")
        return replace(account, auth_token=self.auth_token)

    def get_users(self) -> list[ProviderAccount]:
        if self.tv.unavailable:
            raise ProviderUnavailable("plex.tv unreachable")
        return [replace(account) for account, _servers in self.tv.shared]

    def check_user_access(self, account_id: int) -> bool:
        if not self.machine_id or self.tv.unavailable:
            return False
        for account, servers in self.tv.shared:
            if account.id == account_id:
                return self.machine_id in servers
        return False


class FakeJellyfinServer:
    """Jellyfin/Emby users keyed by username. Records every login attempt."""

    def __init__(self, server_id: str = "jf-server-1") -> None:
        self.server_id = server_id
        self.users: dict[str, tuple[str, str, str | None]] = {}
        self.logins: list[tuple[str, str, str]] = []
        self.unavailable = False

    def add_user(self, username: str, password: str, user_id: str, image_tag: str | None = None) -> None:
        self.users[username] = (password, user_id, image_tag)

    def client(self, hostname: str, device_id: str) -> FakeJellyfinClient:
        return FakeJellyfinClient(self, hostname, device_id)


class FakeJellyfinClient:
    def __init__(self, server: FakeJellyfinServer, hostname: str, device_id: str) -> None:
        self.server = server
        self.hostname = hostname
        self.device_id = device_id

    def login(self, username: str, password: str | None) -> ProviderAccount:
        self.server.logins.append((self.hostname, self.device_id, username))
        if self.server.unavailable:
            raise ProviderUnavailable("Media server unreachable")
        entry = self.server.users.get(username)
        if entry is None or entry[0] != (password or ""):
            raise ProviderUnauthorized("Unauthorized")
        _password, user_id, image_tag = entry
        return ProviderAccount(
            provider="jellyfin",
            id=user_id,
            username=username,
            auth_token=f"jf-token-{username}",
            server_id=self.server.server_id,
            device_id=self.device_id,
            image_tag=image_tag,
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_reset(self, user: User, reset_url: str) -> None:
        self.sent.append((user.email, reset_url))


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(
    user_store: UserStore,
    plex_tv: FakePlexTv,
    jellyfin_server: FakeJellyfinServer,
    notifier: RecordingNotifier,
):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and provider fakes into app.state so TestClient
    routes never open the production database or touch the network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_state(
            app,
            user_store,
            plex_client_factory=plex_tv.client,
            jellyfin_client_factory=jellyfin_server.client,
            notifier=notifier,
        )
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = _make_test_store()
    yield s
    s.close()


@pytest.fixture
def plex_tv() -> FakePlexTv:
    return FakePlexTv()


@pytest.fixture
def jellyfin_server() -> FakeJellyfinServer:
    return FakeJellyfinServer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def reconciler(store: UserStore, plex_tv: FakePlexTv, jellyfin_server: FakeJellyfinServer) -> IdentityReconciler:
    return IdentityReconciler(
        store,
        AccessPolicy(plex_client_factory=plex_tv.client),
        PlexProvider(client_factory=plex_tv.client),
        JellyfinProvider(client_factory=jellyfin_server.client),
    )


@pytest.fixture
def client(
    store: UserStore,
    plex_tv: FakePlexTv,
    jellyfin_server: FakeJellyfinServer,
    notifier: RecordingNotifier,
) -> Generator[TestClient, None, None]:
    """TestClient against the real app with an empty user table.

    The app uses the test store and the provider fakes, so tests hit the real
    routes, dependencies, and exception handlers.
    """
    app.router.lifespan_context = _patch_lifespan(store, plex_tv, jellyfin_server, notifier)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
