"""Process-wide authentication context.

Built once at startup and passed to whatever dispatches calendar
operations, so there is exactly one TokenManager (and one token file
writer) per process.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from authlib.integrations.httpx_client import AsyncOAuth2Client
from google.oauth2.credentials import Credentials as GoogleCredentials

from gcal_auth import config
from gcal_auth.google.exceptions import AuthorizationRequired, GoogleAuthError
from gcal_auth.google.oauth import create_oauth_client, load_client_config
from gcal_auth.google.server import AuthServer
from gcal_auth.google.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    token_manager: TokenManager
    auth_server: AuthServer

    async def is_authenticated(self) -> bool:
        return await self.token_manager.validate()

    async def require_auth(self) -> GoogleCredentials:
        """Return the current credential handle or ask the user to log in.

        Call this per batch of API calls rather than caching the handle;
        each call validates, and persists any refresh, first.

        Raises:
            AuthorizationRequired: If there is no valid credential.
        """
        if not await self.token_manager.validate():
            raise AuthorizationRequired()
        return self.token_manager.get_credentials()

    async def authorized_client(self) -> AsyncOAuth2Client:
        """Base OAuth client, refreshed and persisted transparently on use."""
        await self.require_auth()
        return self.token_manager.client

    async def aclose(self) -> None:
        try:
            await self.auth_server.stop()
        finally:
            await self.token_manager.aclose()


def create_context(
    keys_path: str | Path | None = None,
    token_path: str | Path | None = None,
    ports: Sequence[int] | None = None,
    host: str | None = None,
) -> AuthContext:
    """Build the token manager and auth server for this process.

    Missing or malformed OAuth keys are tolerated here: an existing,
    unexpired token is still usable without them. They become fatal once
    a refresh or a new browser flow is needed.
    """
    keys_path = Path(keys_path) if keys_path else config.keys_path()
    try:
        client_config = load_client_config(keys_path)
    except GoogleAuthError as e:
        logger.warning(f"OAuth keys unavailable, only existing tokens can be used: {e}")
        client_config = None

    token_manager = TokenManager(create_oauth_client(client_config), token_path=token_path)
    auth_server = AuthServer(token_manager, keys_path=keys_path, ports=ports, host=host)
    return AuthContext(token_manager=token_manager, auth_server=auth_server)
