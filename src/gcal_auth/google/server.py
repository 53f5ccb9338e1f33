"""Short-lived local HTTP listener for the OAuth authorization-code flow.

The listener binds the first free port in a small candidate range,
serves a start page with the Google consent link and completes the
code exchange on /oauth2callback. Tokens are handed to the TokenManager
for persistence; the server itself only tracks whether the flow has
completed.
"""

from __future__ import annotations

import errno
import html
import logging
import webbrowser
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path

from aiohttp import web
from authlib.integrations.httpx_client import AsyncOAuth2Client

from gcal_auth import config
from gcal_auth.google.exceptions import GoogleAuthError
from gcal_auth.google.oauth import (
    CALLBACK_PATH,
    TOKEN_URL,
    OAuthClientConfig,
    authorization_url,
    create_oauth_client,
    load_client_config,
)
from gcal_auth.google.token_manager import TokenManager

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"


_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{ font-family: sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; background-color: #f4f4f4; margin: 0; }}
        .container {{ text-align: center; padding: 2em; background-color: #fff; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
        h1 {{ color: {color}; }}
        p {{ color: #333; margin-bottom: 0.5em; }}
        code {{ background-color: #eee; padding: 0.2em 0.4em; border-radius: 3px; font-size: 0.9em; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
    </div>
</body>
</html>
"""


def _render(title: str, body: str, color: str = "#333") -> str:
    return _PAGE.format(title=html.escape(title), body=body, color=color)


def _html_response(title: str, body: str, status: int = 200, color: str = "#333") -> web.Response:
    return web.Response(
        text=_render(title, body, color), status=status, content_type="text/html"
    )


class AuthServer:
    """Local listener driving one interactive authorization attempt.

    State moves IDLE -> LISTENING -> AWAITING_CALLBACK -> COMPLETED or
    FAILED. A failed exchange keeps the listener up so the user can retry
    from the start page.

    Example:
        >>> server = AuthServer(token_manager)
        >>> if await server.start():
        ...     while not server.completed:
        ...         await asyncio.sleep(1)
        ...     await server.stop()
    """

    def __init__(
        self,
        token_manager: TokenManager,
        keys_path: str | Path | None = None,
        ports: Sequence[int] | None = None,
        host: str | None = None,
        client_factory: Callable[..., AsyncOAuth2Client] = create_oauth_client,
        browser: Callable[[str], object] = webbrowser.open,
    ):
        """Initialize the auth server.

        Args:
            token_manager: Receives the exchanged tokens.
            keys_path: OAuth keys file. Defaults to config.keys_path().
            ports: Candidate ports, tried in ascending order.
                Defaults to config.auth_port_range().
            host: Interface to bind. Defaults to config.auth_host().
            client_factory: Builds the flow-specific OAuth client.
            browser: Opens the authorization URL.
        """
        self.token_manager = token_manager
        self.keys_path = Path(keys_path) if keys_path else config.keys_path()
        self.ports = sorted(ports) if ports is not None else list(config.auth_port_range())
        self.host = host or config.auth_host()
        self._client_factory = client_factory
        self._browser = browser

        self.state = FlowState.IDLE
        self.last_error: str | None = None
        self.flow_client: AsyncOAuth2Client | None = None
        self._runner: web.AppRunner | None = None
        self._port: int | None = None

    @property
    def base_client(self) -> AsyncOAuth2Client:
        return self.token_manager.client

    @property
    def completed(self) -> bool:
        return self.state is FlowState.COMPLETED

    def running_port(self) -> int | None:
        """Port the listener is bound to, or None when stopped."""
        return self._port

    def authorization_url(self) -> str:
        """Consent URL from the flow client, or the base client before a flow starts."""
        return authorization_url(self.flow_client or self.base_client)

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_root)
        app.router.add_get(CALLBACK_PATH, self._handle_callback)
        return app

    async def start(self, open_browser: bool = True) -> bool:
        """Start the flow unless credentials are already valid.

        Args:
            open_browser: Open the consent page in the default browser.

        Returns:
            True if already authenticated or the listener is waiting for
            the callback; False if no port was free or the OAuth keys
            could not be loaded.
        """
        if await self.token_manager.validate():
            logger.info("Existing tokens are valid; no auth server needed")
            self.state = FlowState.COMPLETED
            return True

        if self._runner is not None:
            logger.info(f"Auth server already running on port {self._port}")
            return True

        port = await self._start_on_available_port()
        if port is None:
            self.state = FlowState.FAILED
            self.last_error = f"No port available in {self._describe_ports()}"
            logger.error(f"Failed to start auth server: {self.last_error}")
            return False

        self.state = FlowState.LISTENING

        try:
            client_config = load_client_config(self.keys_path)
        except GoogleAuthError as e:
            logger.error(f"Error loading OAuth keys: {e}")
            self.state = FlowState.FAILED
            self.last_error = str(e)
            await self.stop()
            return False

        self.flow_client = self._client_factory(
            client_config,
            redirect_uri=OAuthClientConfig.redirect_uri_for_port(port),
        )
        self.state = FlowState.AWAITING_CALLBACK
        logger.info(f"Auth server listening on http://{self.host}:{port}/")

        if open_browser:
            url = self.authorization_url()
            logger.info(f"Opening browser for authorization: {url}")
            self._browser(url)

        return True

    def _describe_ports(self) -> str:
        if not self.ports:
            return "empty port list"
        return f"ports {self.ports[0]}-{self.ports[-1]}"

    async def _start_on_available_port(self) -> int | None:
        """Bind the first free candidate port.

        Returns:
            The bound port, or None if every port is taken or binding
            failed for another reason.
        """
        runner = web.AppRunner(self._build_app())
        await runner.setup()

        for port in self.ports:
            site = web.TCPSite(runner, self.host, port)
            try:
                await site.start()
            except OSError as e:
                await site.stop()
                if e.errno == errno.EADDRINUSE:
                    logger.debug(f"Port {port} in use, trying next")
                    continue
                logger.error(f"Failed to bind auth server on port {port}: {e}")
                break
            else:
                self._runner = runner
                self._port = port
                return port

        await runner.cleanup()
        return None

    async def stop(self) -> None:
        """Stop the listener. Safe to call when already stopped."""
        runner, self._runner = self._runner, None
        port, self._port = self._port, None
        if runner is None:
            return

        await runner.cleanup()
        if self.flow_client is not None:
            await self.flow_client.aclose()
        logger.info(f"Auth server on port {port} stopped")

    async def _handle_root(self, request: web.Request) -> web.Response:
        url = html.escape(self.authorization_url(), quote=True)
        return _html_response(
            "Google Calendar Authentication",
            f'<p><a href="{url}">Authenticate with Google</a></p>',
        )

    async def _handle_callback(self, request: web.Request) -> web.Response:
        code = request.query.get("code")
        if not code:
            error = request.query.get("error")
            logger.warning(f"OAuth callback without code (error={error})")
            return _html_response(
                "Authorization code missing",
                "<p>The callback did not include an authorization code.</p>"
                '<p><a href="/">Start again</a></p>',
                status=400,
                color="#F44336",
            )

        if self.flow_client is None:
            return _html_response(
                "Authentication flow not properly initiated",
                "<p>Restart the login command and try again.</p>",
                status=500,
                color="#F44336",
            )

        try:
            token = await self.flow_client.fetch_token(TOKEN_URL, code=code)
            await self.token_manager.save(dict(token))
        except Exception as e:
            logger.exception("Error exchanging authorization code")
            self.state = FlowState.FAILED
            self.last_error = str(e) or type(e).__name__
            return _html_response(
                "Authentication Failed",
                "<p>An error occurred during authentication:</p>"
                f"<p><code>{html.escape(self.last_error)}</code></p>"
                "<p>Please try again or check the server logs.</p>",
                status=500,
                color="#F44336",
            )

        self.state = FlowState.COMPLETED
        self.last_error = None
        token_path = html.escape(str(self.token_manager.token_path))
        logger.info("Authorization code exchanged; tokens saved")
        return _html_response(
            "Authentication Successful!",
            "<p>Your authentication tokens have been saved successfully to:</p>"
            f"<p><code>{token_path}</code></p>"
            "<p>You can now close this browser window.</p>",
            color="#4CAF50",
        )
