"""
auth/policy.py -- AccessPolicy: who may obtain or keep a local account.

The main user (id=1) owns the media server. For Plex, another account is
only let in when it is the main account itself, is being linked to the main
user's own row, or has been shared the main user's server. Jellyfin/Emby
accounts have already proven access by logging in to the configured host, so
no cross-check is made for them.

Auto-provisioning of unmatched accounts is gated for both providers by the
"new logins permitted" flag (AppSettings.new_plex_login).
"""

from __future__ import annotations

import logging

from auth.models import AppSettings, ProviderAccount, User
from auth.plex import PlexTvClient
from auth.providers import PlexClientFactory

logger = logging.getLogger("marquee.auth.policy")


class AccessPolicy:
    def __init__(self, plex_client_factory: PlexClientFactory = PlexTvClient) -> None:
        self._plex_client_factory = plex_client_factory

    def main_plex_client(self, main_user: User, settings: AppSettings) -> PlexTvClient:
        """Client authenticated as the main user, for shared-list lookups."""
        return self._plex_client_factory(main_user.plex_token or "", settings.plex_machine_id)

    def may_create(self, settings: AppSettings) -> bool:
        return settings.new_plex_login

    def plex_account_permitted(
        self,
        account: ProviderAccount,
        user: User | None,
        main_user: User,
        settings: AppSettings,
    ) -> bool:
        """Return True if a Plex account may be linked to, or create, a local user.

        Conditions are evaluated in order and the remote access check only
        runs when none of the local ones hold.
        """
        if account.id is not None and account.id == main_user.plex_id:
            return True
        if user is not None and user.is_main_user and not user.is_plex_user:
            return True
        if (
            account.email
            and not main_user.is_plex_user
            and account.email.strip().lower() == main_user.email.strip().lower()
        ):
            return True
        if not main_user.is_plex_user or not isinstance(account.id, int):
            return False
        return self.main_plex_client(main_user, settings).check_user_access(account.id)

    def plex_link_still_valid(self, user: User, main_user: User | None, settings: AppSettings) -> bool:
        """Re-verify an existing Plex link at local sign-in.

        Only links other than the main account's own are re-checked, and only
        when the main user is itself a Plex user.
        """
        if main_user is None or not main_user.is_plex_user:
            return True
        if not user.is_plex_user or user.plex_id == main_user.plex_id:
            return True
        return self.main_plex_client(main_user, settings).check_user_access(user.plex_id)

    def jellyfin_account_permitted(self, account: ProviderAccount, settings: AppSettings) -> bool:
        """Any account that authenticated against the configured host is accepted."""
        return True
