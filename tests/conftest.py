"""Shared fixtures for gcal-auth tests."""

import json
import socket
import time
from urllib.parse import urlencode

import pytest

from gcal_auth.google.store import CredentialRecord, CredentialStore
from gcal_auth.google.token_manager import TokenManager


class FakeOAuthClient:
    """Stands in for Authlib's AsyncOAuth2Client.

    Follows the same contract: refresh_token() stores the new token,
    carries the old refresh token forward when the response omits it,
    and awaits the update_token hook.
    """

    def __init__(
        self,
        config=None,
        redirect_uri=None,
        refresh_result=None,
        refresh_error=None,
        exchange_result=None,
        exchange_error=None,
    ):
        self.client_id = config.client_id if config else "test-client-id"
        self.client_secret = config.client_secret if config else "test-client-secret"
        self.redirect_uri = redirect_uri or "http://localhost"
        self.token = None
        self.update_token = None
        self.refresh_result = refresh_result or {
            "access_token": "refreshed-access-token",
            "expires_at": int(time.time()) + 3600,
            "token_type": "Bearer",
        }
        self.refresh_error = refresh_error
        self.exchange_result = exchange_result or {
            "access_token": "new-access-token",
            "refresh_token": "new-refresh-token",
            "expires_at": int(time.time()) + 3600,
            "scope": "https://www.googleapis.com/auth/calendar",
            "token_type": "Bearer",
        }
        self.exchange_error = exchange_error
        self.refresh_calls = []
        self.fetch_calls = []
        self.closed = False

    async def refresh_token(self, url=None, refresh_token=None, **kwargs):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        token = dict(self.refresh_result)
        if "refresh_token" not in token:
            token["refresh_token"] = refresh_token
        self.token = token
        if self.update_token:
            await self.update_token(self.token, refresh_token=refresh_token)
        return self.token

    async def fetch_token(self, url=None, code=None, **kwargs):
        self.fetch_calls.append(code)
        if self.exchange_error:
            raise self.exchange_error
        self.token = dict(self.exchange_result)
        return self.token

    def create_authorization_url(self, url, **kwargs):
        params = {"client_id": self.client_id, "redirect_uri": self.redirect_uri, **kwargs}
        return f"{url}?{urlencode(params)}", "test-state"

    async def aclose(self):
        self.closed = True


def now_ms() -> int:
    return int(time.time() * 1000)


def free_port() -> int:
    return free_ports(1)[0]


def free_ports(count: int) -> list[int]:
    """Distinct ports that were free a moment ago."""
    socks = [socket.socket(socket.AF_INET, socket.SOCK_STREAM) for _ in range(count)]
    try:
        for sock in socks:
            sock.bind(("127.0.0.1", 0))
        return [sock.getsockname()[1] for sock in socks]
    finally:
        for sock in socks:
            sock.close()


@pytest.fixture
def token_path(tmp_path):
    return tmp_path / "tokens" / ".gcp-saved-tokens.json"


@pytest.fixture
def store(token_path):
    return CredentialStore(token_path)


@pytest.fixture
def fake_client():
    return FakeOAuthClient()


@pytest.fixture
def manager(fake_client, store):
    return TokenManager(fake_client, store=store)


@pytest.fixture
def keys_path(tmp_path):
    """Create a mock OAuth keys file."""
    keys = {
        "installed": {
            "client_id": "test-client-id.apps.googleusercontent.com",
            "client_secret": "test-client-secret",
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    path = tmp_path / "gcp-oauth.keys.json"
    with open(path, "w") as f:
        json.dump(keys, f)
    return path


@pytest.fixture
def valid_record():
    return CredentialRecord(
        access_token="test-access-token",
        refresh_token="test-refresh-token",
        expiry_date=now_ms() + 60 * 60 * 1000,
        extra={"scope": "https://www.googleapis.com/auth/calendar", "token_type": "Bearer"},
    )
