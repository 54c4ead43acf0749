"""Unit tests for auth/plex.py and auth/jellyfin.py -- remote identity clients.

The module-level requests sessions are patched, so no network I/O happens.

Covers:
- PlexTvClient.get_user() parses account.json and maps HTTP failures
- PlexTvClient.get_users() / check_user_access() parse the shared-users XML
- check_user_access() never raises and denies without a machine id
- JellyfinClient.login() request shape, response parsing, and failure mapping
- derive_device_id() and clean_hostname()
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from auth.errors import ProviderUnauthorized, ProviderUnavailable
from auth.jellyfin import JellyfinClient, clean_hostname, derive_device_id
from auth.plex import PLEX_ACCOUNT_URL, PlexTvClient

_SHARED_USERS_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<MediaContainer friendlyName="myPlex" identifier="com.plexapp.plugins.myplex" size="2">
  <User id="77" title="friend" username="friend" email="friend@example.com" thumb="https://plex.tv/f.png">
    <Server id="1" serverId="10" machineIdentifier="machine-abc" name="Home" />
  </User>
  <User id="99" title="other" username="other" email="other@example.com" thumb="">
    <Server id="2" serverId="11" machineIdentifier="machine-xyz" name="Elsewhere" />
  </User>
</MediaContainer>
"""


def _response(status_code=200, json_data=None, content=b""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.json.return_value = json_data
    resp.content = content
    return resp


# ---------------------------------------------------------------------------
# Plex
# ---------------------------------------------------------------------------


class TestPlexTvClient:
    def test_get_user(self):
        body = {"user": {"id": 42, "username": "alice", "email": "a@x.com", "thumb": "https://plex.tv/a.png"}}
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(json_data=body)
            account = PlexTvClient("T1").get_user()
        assert account.id == 42
        assert account.username == "alice"
        assert account.email == "a@x.com"
        assert account.thumb == "https://plex.tv/a.png"
        assert account.auth_token == "T1"
        url = session.get.call_args.args[0]
        headers = session.get.call_args.kwargs["headers"]
        assert url == PLEX_ACCOUNT_URL
        assert headers["X-Plex-Token"] == "T1"
        assert "timeout" in session.get.call_args.kwargs

    def test_get_user_rejected_token(self):
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(status_code=401)
            with pytest.raises(ProviderUnauthorized):
                PlexTvClient("bad").get_user()

    def test_get_user_server_error(self):
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(status_code=503)
            with pytest.raises(ProviderUnavailable):
                PlexTvClient("T1").get_user()

    def test_get_user_network_error(self):
        with patch("auth.plex._session") as session:
            session.get.side_effect = requests.ConnectionError("down")
            with pytest.raises(ProviderUnavailable):
                PlexTvClient("T1").get_user()

    def test_get_users_parses_xml(self):
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(content=_SHARED_USERS_XML)
            users = PlexTvClient("admin-token").get_users()
        assert [u.id for u in users] == [77, 99]
        assert users[0].email == "friend@example.com"
        assert users[1].thumb == ""

    def test_check_user_access(self):
        client = PlexTvClient("admin-token", machine_id="machine-abc")
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(content=_SHARED_USERS_XML)
            assert client.check_user_access(77) is True
            assert client.check_user_access(99) is False
            assert client.check_user_access(12345) is False

    def test_check_user_access_without_machine_id(self):
        with patch("auth.plex._session") as session:
            assert PlexTvClient("admin-token").check_user_access(77) is False
        session.get.assert_not_called()

    def test_check_user_access_swallows_provider_errors(self):
        client = PlexTvClient("admin-token", machine_id="machine-abc")
        with patch("auth.plex._session") as session:
            session.get.side_effect = requests.Timeout("slow")
            assert client.check_user_access(77) is False

    def test_malformed_xml(self):
        with patch("auth.plex._session") as session:
            session.get.return_value = _response(content=b"<not-xml")
            with pytest.raises(ProviderUnavailable):
                PlexTvClient("admin-token").get_users()


# ---------------------------------------------------------------------------
# Jellyfin / Emby
# ---------------------------------------------------------------------------


class TestJellyfinClient:
    def test_login(self):
        body = {
            "AccessToken": "jf-token",
            "ServerId": "srv-1",
            "User": {"Id": "abc", "Name": "bob", "ServerId": "srv-1", "PrimaryImageTag": "tag1"},
        }
        with patch("auth.jellyfin._session") as session:
            session.post.return_value = _response(json_data=body)
            account = JellyfinClient("http://media.local/", "dev-1").login("bob", "pw")
        assert account.provider == "jellyfin"
        assert account.id == "abc"
        assert account.username == "bob"
        assert account.auth_token == "jf-token"
        assert account.server_id == "srv-1"
        assert account.device_id == "dev-1"
        assert account.image_tag == "tag1"

        call = session.post.call_args
        assert call.args[0] == "http://media.local/Users/AuthenticateByName"
        assert call.kwargs["json"] == {"Username": "bob", "Pw": "pw"}
        assert 'DeviceId="dev-1"' in call.kwargs["headers"]["X-Emby-Authorization"]

    def test_login_without_image_tag(self):
        body = {"AccessToken": "jf-token", "User": {"Id": "abc", "Name": "bob"}}
        with patch("auth.jellyfin._session") as session:
            session.post.return_value = _response(json_data=body)
            account = JellyfinClient("http://media.local", "dev-1").login("bob", None)
        assert account.image_tag is None
        assert session.post.call_args.kwargs["json"]["Pw"] == ""

    @pytest.mark.parametrize("status", [401, 403])
    def test_login_rejected(self, status):
        with patch("auth.jellyfin._session") as session:
            session.post.return_value = _response(status_code=status)
            with pytest.raises(ProviderUnauthorized):
                JellyfinClient("http://media.local", "dev-1").login("bob", "nope")

    def test_login_network_error(self):
        with patch("auth.jellyfin._session") as session:
            session.post.side_effect = requests.ConnectionError("refused")
            with pytest.raises(ProviderUnavailable):
                JellyfinClient("http://media.local", "dev-1").login("bob", "pw")

    def test_login_malformed_response(self):
        with patch("auth.jellyfin._session") as session:
            session.post.return_value = _response(json_data={"unexpected": True})
            with pytest.raises(ProviderUnavailable):
                JellyfinClient("http://media.local", "dev-1").login("bob", "pw")


class TestJellyfinHelpers:
    def test_derive_device_id_is_stable(self):
        assert derive_device_id("bob") == derive_device_id("bob")
        assert derive_device_id("bob") != derive_device_id("alice")
        assert base64.b64decode(derive_device_id("bob")).decode() == "BOT_marquee_bob"

    def test_clean_hostname(self):
        assert clean_hostname(" http://media.local/ ") == "http://media.local"
        assert clean_hostname("http://media.local") == "http://media.local"
