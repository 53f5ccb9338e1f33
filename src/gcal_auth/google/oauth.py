"""Google OAuth client configuration using Authlib.

This module loads the OAuth client keys downloaded from Google Cloud
Console and builds Authlib clients for the calendar scope:
- The base client used for refresh and ordinary API calls
- Flow-specific clients whose redirect URI points at the local listener

Keys are read from gcp-oauth.keys.json in the repo root by default.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from authlib.integrations.httpx_client import AsyncOAuth2Client

from gcal_auth.google.exceptions import (
    CredentialsNotFoundError,
    InvalidClientConfigError,
)

logger = logging.getLogger(__name__)


SCOPES = {
    "calendar": "https://www.googleapis.com/auth/calendar",
    "calendar_readonly": "https://www.googleapis.com/auth/calendar.readonly",
}

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

CALLBACK_PATH = "/oauth2callback"

UpdateTokenHook = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class OAuthClientConfig:
    """OAuth client keys, loaded once per process."""

    client_id: str
    client_secret: str
    redirect_uris: list[str] = field(default_factory=list)

    @property
    def default_redirect_uri(self) -> str | None:
        return self.redirect_uris[0] if self.redirect_uris else None

    @staticmethod
    def redirect_uri_for_port(port: int) -> str:
        """Callback URL for a listener bound to ``port``."""
        return f"http://localhost:{port}{CALLBACK_PATH}"


def load_client_config(path: str | Path) -> OAuthClientConfig:
    """Load OAuth client keys from file.

    Handles both the ``installed`` and ``web`` formats produced by
    Google Cloud Console.

    Raises:
        CredentialsNotFoundError: If the file does not exist.
        InvalidClientConfigError: If the file is not valid keys JSON.
    """
    path = Path(path)
    if not path.exists():
        raise CredentialsNotFoundError(str(path))

    try:
        with open(path) as f:
            keys = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidClientConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(keys, dict):
        raise InvalidClientConfigError(f"Expected a JSON object in {path}")

    if "installed" in keys:
        app_keys = keys["installed"]
    elif "web" in keys:
        app_keys = keys["web"]
    else:
        raise InvalidClientConfigError(
            "Invalid keys file format. Expected 'installed' or 'web' key."
        )

    client_id = app_keys.get("client_id")
    client_secret = app_keys.get("client_secret")
    if not client_id or not client_secret:
        raise InvalidClientConfigError("Client ID or Client Secret missing in keys file.")

    return OAuthClientConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uris=list(app_keys.get("redirect_uris", [])),
    )


def create_oauth_client(
    config: OAuthClientConfig | None,
    redirect_uri: str | None = None,
    token: dict[str, Any] | None = None,
    update_token: UpdateTokenHook | None = None,
) -> AsyncOAuth2Client:
    """Build an Authlib client for the Google calendar scope.

    Args:
        config: Client keys. ``None`` builds a keyless client that can still
            carry a valid access token but cannot refresh or exchange codes.
        redirect_uri: Overrides the first redirect URI from the keys file.
        token: Initial token in Authlib format.
        update_token: Coroutine called whenever the client refreshes.
    """
    return AsyncOAuth2Client(
        client_id=config.client_id if config else None,
        client_secret=config.client_secret if config else None,
        scope=SCOPES["calendar"],
        redirect_uri=redirect_uri or (config.default_redirect_uri if config else None),
        token=token,
        update_token=update_token,
        token_endpoint=TOKEN_URL,
        token_endpoint_auth_method="client_secret_post",
    )


def authorization_url(client: AsyncOAuth2Client) -> str:
    """Authorization URL requesting offline access with forced consent.

    Forced consent makes Google reissue a refresh token on every flow.
    """
    url, _state = client.create_authorization_url(
        AUTHORIZE_URL,
        access_type="offline",
        prompt="consent",
    )
    return url
