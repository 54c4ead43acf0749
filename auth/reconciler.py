"""
auth/reconciler.py -- IdentityReconciler: resolve a provider identity to a
local user.

Every flow has the same shape:

    resolve identity -> find local user -> (bootstrap | policy -> mutate | create)
                     -> persist -> return the user for the session

Plex and Jellyfin/Emby share that skeleton in _reconcile(); the parts that
differ (how a local user is matched, which fields are refreshed, how a new
row is built, what happens after a write) live in small per-request flow
objects. Local password sign-in has its own shape and its own method.

AppSettings is passed in on every call rather than read from a global, so the
one write on this path (the Jellyfin first-run hostname bootstrap) is
explicit and testable.

Error contract:
  Every failure leaves as an AuthError subclass. ProviderError and database
  errors are caught here, logged with context (ip, account identifiers,
  never passwords), and translated. The opportunistic Plex enrichment during
  local sign-in is the one step whose failures are logged and discarded.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AccessDenied,
    AddEmailRequired,
    AuthError,
    InternalError,
    ProviderError,
    ProviderUnauthorized,
    Unauthorized,
    ValidationError,
)
from auth.jellyfin import clean_hostname, derive_device_id
from auth.models import DEFAULT_AVATAR, MAIN_USER_ID, AppSettings, ProviderAccount, User, gravatar_url
from auth.permissions import Permission
from auth.policy import AccessPolicy
from auth.providers import (
    JellyfinCredentials,
    JellyfinProvider,
    LocalCredentials,
    LocalProvider,
    PlexCredentials,
    PlexProvider,
)
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password

logger = logging.getLogger("marquee.auth.reconciler")


class _Flow(Protocol):
    """Provider-specific hooks plugged into IdentityReconciler._reconcile()."""

    provider: str

    def match(self, account: ProviderAccount) -> User | None: ...
    def permitted(self, account: ProviderAccount, user: User | None) -> bool: ...
    def apply(self, user: User, account: ProviderAccount) -> None: ...
    def build_new(self, account: ProviderAccount, bootstrap: bool) -> User: ...
    def after_persist(self, account: ProviderAccount) -> None: ...


# ---------------------------------------------------------------------------
# Plex
# ---------------------------------------------------------------------------


class _PlexFlow:
    provider = "plex"

    def __init__(self, store: UserStore, policy: AccessPolicy, settings: AppSettings, ip: str | None) -> None:
        self.store = store
        self.policy = policy
        self.settings = settings
        self.ip = ip

    def match(self, account: ProviderAccount) -> User | None:
        return self.store.get_by_plex_id_or_email(account.id, account.email)

    def permitted(self, account: ProviderAccount, user: User | None) -> bool:
        main_user = self.store.get_by_id(MAIN_USER_ID)
        if main_user is None:
            raise InternalError("Unable to authenticate.")
        if not account.id:
            logger.error(
                "Plex ID was missing from Plex.tv response (ip=%s email=%s plex_username=%s)",
                self.ip,
                account.email,
                account.username,
            )
            raise InternalError("Something went wrong. Try again.")
        return self.policy.plex_account_permitted(account, user, main_user, self.settings)

    def apply(self, user: User, account: ProviderAccount) -> None:
        if not user.is_plex_user:
            logger.info(
                "Found matching Plex user; updating user with Plex data (ip=%s email=%s user_id=%s plex_id=%s)",
                self.ip,
                user.email,
                user.id,
                account.id,
            )
        user.plex_token = account.auth_token
        user.plex_id = account.id
        user.avatar = account.thumb or user.avatar
        user.plex_username = account.username

    def build_new(self, account: ProviderAccount, bootstrap: bool) -> User:
        email = account.email or ""
        return User(
            email=email,
            plex_username=account.username,
            plex_id=account.id,
            plex_token=account.auth_token,
            avatar=account.thumb or gravatar_url(email),
        )

    def after_persist(self, account: ProviderAccount) -> None:
        return None


# ---------------------------------------------------------------------------
# Jellyfin / Emby
# ---------------------------------------------------------------------------


class _JellyfinFlow:
    provider = "jellyfin"

    def __init__(
        self,
        store: UserStore,
        policy: AccessPolicy,
        settings: AppSettings,
        ip: str | None,
        *,
        avatar_host: str,
        supplied_hostname: str | None,
        email: str | None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.settings = settings
        self.ip = ip
        self.avatar_host = avatar_host
        self.supplied_hostname = supplied_hostname
        self.email = email

    def avatar_for(self, account: ProviderAccount) -> str:
        if account.image_tag:
            return f"{self.avatar_host}/Users/{account.id}/Images/Primary/?tag={account.image_tag}&quality=90"
        return DEFAULT_AVATAR

    def match(self, account: ProviderAccount) -> User | None:
        return self.store.get_by_jellyfin_user_id(str(account.id))

    def permitted(self, account: ProviderAccount, user: User | None) -> bool:
        return self.policy.jellyfin_account_permitted(account, self.settings)

    def apply(self, user: User, account: ProviderAccount) -> None:
        if user.jellyfin_auth_token != account.auth_token:
            user.jellyfin_auth_token = account.auth_token
        if not user.jellyfin_user_id:
            user.jellyfin_user_id = str(account.id)
        user.jellyfin_device_id = account.device_id
        user.avatar = self.avatar_for(account)
        user.jellyfin_username = account.username
        # The provider name is the display name from now on.
        if user.username == account.username:
            user.username = None

    def build_new(self, account: ProviderAccount, bootstrap: bool) -> User:
        email = self.email
        if not email:
            if not bootstrap:
                raise AddEmailRequired()
            email = account.username
        return User(
            email=email,
            jellyfin_username=account.username,
            jellyfin_user_id=str(account.id),
            jellyfin_device_id=account.device_id,
            jellyfin_auth_token=account.auth_token,
            avatar=self.avatar_for(account),
        )

    def after_persist(self, account: ProviderAccount) -> None:
        if self.settings.jellyfin_hostname or not self.supplied_hostname:
            return
        self.settings = self.store.update_app_settings(
            jellyfin_hostname=clean_hostname(self.supplied_hostname),
            jellyfin_server_id=account.server_id or "",
        )
        logger.info("Configured media server from first sign-in (hostname=%s)", self.settings.jellyfin_hostname)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class IdentityReconciler:
    """Find-or-create local users for the local, Plex, and Jellyfin/Emby flows.

    Usage:
        reconciler = IdentityReconciler(store, AccessPolicy(), PlexProvider(), JellyfinProvider())
        user = reconciler.login_plex(token, store.get_app_settings(), ip=request_ip)
    """

    def __init__(
        self,
        store: UserStore,
        policy: AccessPolicy,
        plex: PlexProvider,
        jellyfin: JellyfinProvider,
        local: LocalProvider | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._plex = plex
        self._jellyfin = jellyfin
        self._local = local or LocalProvider()

    # ------------------------------------------------------------------
    # Shared skeleton
    # ------------------------------------------------------------------

    def _resolve_existing(self, current_user_id: int | None, flow: _Flow, account: ProviderAccount) -> User | None:
        # An open session links the provider to that same user; no identity search.
        if current_user_id is not None:
            return self._store.get_by_id(current_user_id)
        return flow.match(account)

    def _bootstrap_admin(self, user: User, ip: str | None) -> User:
        """Create the main user. Only ever called while the table is empty."""
        user.id = MAIN_USER_ID
        user.permissions = int(Permission.ADMIN)
        try:
            self._store.create_user(user)
        except IntegrityError:
            # Another first sign-in won the race for id=1.
            logger.warning("Concurrent first sign-in lost the administrator bootstrap race (ip=%s)", ip)
            raise InternalError("Something went wrong. Try again.") from None
        logger.info("Created administrator user_id=%s email=%s (ip=%s)", user.id, user.email, ip)
        return user

    def _reconcile(
        self,
        flow: _Flow,
        account: ProviderAccount,
        settings: AppSettings,
        current_user_id: int | None,
        ip: str | None,
    ) -> User:
        user = self._resolve_existing(current_user_id, flow, account)

        if user is None and not self._store.has_users():
            user = self._bootstrap_admin(flow.build_new(account, bootstrap=True), ip)
            flow.after_persist(account)
            return user

        if not flow.permitted(account, user):
            logger.warning(
                "Failed sign-in attempt by %s user without access to the media server "
                "(ip=%s email=%s provider_id=%s username=%s)",
                flow.provider,
                ip,
                account.email,
                account.id,
                account.username,
            )
            raise AccessDenied()

        if user is not None:
            flow.apply(user, account)
            self._store.save_user(user)
            flow.after_persist(account)
            return user

        if not self._policy.may_create(settings):
            logger.warning(
                "Failed sign-in attempt by unimported %s user with access to the media server "
                "(ip=%s email=%s provider_id=%s username=%s)",
                flow.provider,
                ip,
                account.email,
                account.id,
                account.username,
            )
            raise AccessDenied()

        user = flow.build_new(account, bootstrap=False)
        user.permissions = settings.default_permissions
        logger.info(
            "Sign-in from %s user with access to the media server; creating local user "
            "(ip=%s provider_id=%s username=%s)",
            flow.provider,
            ip,
            account.id,
            account.username,
        )
        self._store.create_user(user)
        flow.after_persist(account)
        return user

    # ------------------------------------------------------------------
    # Plex
    # ------------------------------------------------------------------

    def login_plex(
        self,
        auth_token: str | None,
        settings: AppSettings,
        current_user_id: int | None = None,
        ip: str | None = None,
    ) -> User:
        if not auth_token:
            raise ValidationError("Authentication token required.")
        flow = _PlexFlow(self._store, self._policy, settings, ip)
        try:
            account = self._plex.resolve_identity(PlexCredentials(auth_token=auth_token))
            return self._reconcile(flow, account, settings, current_user_id, ip)
        except (ProviderError, SQLAlchemyError) as e:
            logger.error("Something went wrong authenticating with Plex account (ip=%s): %s", ip, e)
            raise InternalError("Unable to authenticate.") from e

    def unlink_plex(self, user_id: int) -> User:
        """Remove the Plex link from a local-password user."""
        user = self._store.get_by_id(user_id)
        if user is None or not user.is_local_user:
            logger.error(
                "Something went wrong unlinking a Plex account (user_id=%s): "
                "user must have a local password set to unlink Plex",
                user_id,
            )
            raise InternalError("Unable to unlink plex account.")
        user.plex_id = None
        user.plex_token = None
        user.plex_username = None
        user.avatar = gravatar_url(user.email)
        try:
            self._store.save_user(user)
        except SQLAlchemyError as e:
            logger.error("Something went wrong unlinking a Plex account (user_id=%s): %s", user_id, e)
            raise InternalError("Unable to unlink plex account.") from e
        return user

    # ------------------------------------------------------------------
    # Jellyfin / Emby
    # ------------------------------------------------------------------

    def login_jellyfin(
        self,
        username: str | None,
        password: str | None,
        settings: AppSettings,
        hostname: str | None = None,
        email: str | None = None,
        current_user_id: int | None = None,
        ip: str | None = None,
    ) -> User:
        if not username:
            raise ValidationError("You must provide an username")
        if not settings.jellyfin_hostname and not hostname:
            raise ValidationError("No hostname provided.")

        connect_host = settings.jellyfin_hostname or hostname or ""
        avatar_host = clean_hostname(settings.jellyfin_external_hostname or connect_host)
        flow = _JellyfinFlow(
            self._store,
            self._policy,
            settings,
            ip,
            avatar_host=avatar_host,
            supplied_hostname=hostname,
            email=email,
        )
        try:
            # The remote login needs the device id, so resolve it first.
            known = self._store.get_by_jellyfin_username(username)
            device_id = (known.jellyfin_device_id if known else None) or derive_device_id(username)
            account = self._jellyfin.resolve_identity(
                JellyfinCredentials(
                    username=username,
                    password=password,
                    hostname=connect_host,
                    device_id=device_id,
                )
            )
            return self._reconcile(flow, account, settings, current_user_id, ip)
        except ProviderUnauthorized:
            logger.info(
                "Failed login attempt from user with incorrect %s credentials "
                "(ip=%s username=%s password=__REDACTED__)",
                settings.media_server_type,
                ip,
                username,
            )
            raise Unauthorized() from None
        except (ProviderError, SQLAlchemyError) as e:
            logger.error("Something went wrong authenticating with %s (ip=%s): %s", settings.media_server_type, ip, e)
            raise InternalError("Something went wrong.") from e

    # ------------------------------------------------------------------
    # Local password
    # ------------------------------------------------------------------

    def login_local(
        self,
        email: str | None,
        password: str | None,
        settings: AppSettings,
        ip: str | None = None,
    ) -> User:
        if not settings.local_login:
            raise ValidationError("Password sign-in is disabled.")
        if not email or not password:
            raise ValidationError("You must provide both an email address and a password.")

        account = self._local.resolve_identity(LocalCredentials(email=email, password=password))
        try:
            user = self._store.get_by_email(account.email)
            if user is None and not self._store.has_users():
                user = self._bootstrap_admin(
                    User(email=account.email, password=hash_password(password), avatar=gravatar_url(account.email)),
                    ip,
                )
            else:
                user = authenticate_user(self._store, account.email, password)
                if user is None:
                    logger.warning("Failed sign-in attempt using invalid password (ip=%s email=%s)", ip, account.email)
                    raise AccessDenied()

            main_user = self._store.get_by_id(MAIN_USER_ID)
            if not user.is_plex_user and main_user is not None and main_user.is_plex_user:
                self._enrich_from_plex(user, main_user, settings, ip)

            if not self._policy.plex_link_still_valid(user, main_user, settings):
                logger.warning(
                    "Failed sign-in attempt from Plex user without access to the media server "
                    "(ip=%s email=%s user_id=%s plex_id=%s)",
                    ip,
                    account.email,
                    user.id,
                    user.plex_id,
                )
                raise AccessDenied()
            return user
        except AuthError:
            raise
        except SQLAlchemyError as e:
            logger.error("Something went wrong authenticating with password (ip=%s email=%s): %s", ip, account.email, e)
            raise InternalError("Unable to authenticate.") from e

    def _enrich_from_plex(self, user: User, main_user: User, settings: AppSettings, ip: str | None) -> bool:
        """Best-effort: link a local user to the main account's shared Plex user with the same email.

        Returns True if the user was linked. Never raises: provider and
        storage failures are logged and the local sign-in continues unlinked.
        """
        client = self._policy.main_plex_client(main_user, settings)
        try:
            wanted = user.email.strip().lower()
            match = next((a for a in client.get_users() if a.email and a.email.strip().lower() == wanted), None)
            if match is None or match.id is None or not client.check_user_access(match.id):
                return False
            logger.info(
                "Found matching Plex user; updating user with Plex data (ip=%s email=%s user_id=%s plex_id=%s)",
                ip,
                user.email,
                user.id,
                match.id,
            )
            user.plex_id = match.id
            user.avatar = match.thumb or user.avatar
            user.email = match.email or user.email
            user.plex_username = match.username
            self._store.save_user(user)
            return True
        except (ProviderError, SQLAlchemyError) as e:
            logger.error("Something went wrong fetching Plex users (ip=%s): %s", ip, e)
            return False
