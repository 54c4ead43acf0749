"""Unit tests for auth/policy.py -- AccessPolicy decisions.

The plex.tv side is the FakePlexTv from conftest.py; these tests only check
which rule admits or denies an account and when the remote check runs.
"""

from unittest.mock import MagicMock

from auth.models import AppSettings, ProviderAccount, User
from auth.permissions import Permission
from auth.policy import AccessPolicy

MACHINE_ID = "machine-abc"
SETTINGS = AppSettings(plex_machine_id=MACHINE_ID)


def _plex_main():
    return User(
        id=1, email="admin@example.com", permissions=int(Permission.ADMIN), plex_id=42, plex_token="admin-token"
    )


def _local_main():
    return User(id=1, email="admin@example.com", permissions=int(Permission.ADMIN), password="hash")


def _account(plex_id, email="someone@example.com"):
    return ProviderAccount(provider="plex", id=plex_id, username="someone", email=email)


class TestPlexAccountPermitted:
    def test_main_account_itself(self):
        factory = MagicMock()
        policy = AccessPolicy(plex_client_factory=factory)
        assert policy.plex_account_permitted(_account(42), None, _plex_main(), SETTINGS) is True
        factory.assert_not_called()

    def test_linking_unlinked_main_row(self):
        main = _local_main()
        policy = AccessPolicy(plex_client_factory=MagicMock())
        assert policy.plex_account_permitted(_account(500, "x@example.com"), main, main, SETTINGS) is True

    def test_main_email_while_main_unlinked(self):
        policy = AccessPolicy(plex_client_factory=MagicMock())
        account = _account(500, " ADMIN@example.com ")
        assert policy.plex_account_permitted(account, None, _local_main(), SETTINGS) is True

    def test_main_email_ignored_once_main_linked(self, plex_tv):
        policy = AccessPolicy(plex_client_factory=plex_tv.client)
        account = _account(500, "admin@example.com")
        assert policy.plex_account_permitted(account, None, _plex_main(), SETTINGS) is False

    def test_unlinked_main_denies_strangers(self):
        factory = MagicMock()
        policy = AccessPolicy(plex_client_factory=factory)
        assert policy.plex_account_permitted(_account(500), None, _local_main(), SETTINGS) is False
        factory.assert_not_called()

    def test_shared_server_access(self, plex_tv):
        friend = _account(77)
        plex_tv.share(friend, MACHINE_ID)
        policy = AccessPolicy(plex_client_factory=plex_tv.client)
        assert policy.plex_account_permitted(friend, None, _plex_main(), SETTINGS) is True

    def test_missing_machine_id_denies(self, plex_tv):
        friend = _account(77)
        plex_tv.share(friend, MACHINE_ID)
        policy = AccessPolicy(plex_client_factory=plex_tv.client)
        assert policy.plex_account_permitted(friend, None, _plex_main(), AppSettings()) is False

    def test_remote_check_uses_main_token(self):
        factory = MagicMock()
        factory.return_value.check_user_access.return_value = True
        policy = AccessPolicy(plex_client_factory=factory)
        policy.plex_account_permitted(_account(77), None, _plex_main(), SETTINGS)
        factory.assert_called_once_with("admin-token", MACHINE_ID)
        factory.return_value.check_user_access.assert_called_once_with(77)


class TestPlexLinkStillValid:
    def test_no_check_when_main_not_plex(self):
        factory = MagicMock()
        policy = AccessPolicy(plex_client_factory=factory)
        user = User(email="u@example.com", plex_id=77)
        assert policy.plex_link_still_valid(user, _local_main(), SETTINGS) is True
        factory.assert_not_called()

    def test_no_check_for_main_account_link(self):
        factory = MagicMock()
        policy = AccessPolicy(plex_client_factory=factory)
        assert policy.plex_link_still_valid(_plex_main(), _plex_main(), SETTINGS) is True
        factory.assert_not_called()

    def test_revoked_link(self, plex_tv):
        policy = AccessPolicy(plex_client_factory=plex_tv.client)
        user = User(email="u@example.com", plex_id=77)
        assert policy.plex_link_still_valid(user, _plex_main(), SETTINGS) is False


class TestCreationGate:
    def test_may_create_follows_new_login_flag(self):
        policy = AccessPolicy()
        assert policy.may_create(AppSettings(new_plex_login=True)) is True
        assert policy.may_create(AppSettings(new_plex_login=False)) is False

    def test_jellyfin_accounts_need_no_cross_check(self):
        account = ProviderAccount(provider="jellyfin", id="abc", username="bob")
        assert AccessPolicy().jellyfin_account_permitted(account, AppSettings()) is True
