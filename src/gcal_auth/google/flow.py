"""Drive the interactive login to completion."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gcal_auth.context import AuthContext

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0


async def authenticate(
    context: AuthContext,
    open_browser: bool = True,
    poll_interval: float = POLL_INTERVAL,
) -> bool:
    """Make sure the process holds valid credentials.

    Validates existing tokens first; otherwise starts the auth server and
    polls until the browser flow completes. There is no timeout on the
    browser step.

    Returns:
        True once authenticated, False if the auth server could not start.

    Raises:
        asyncio.CancelledError: If cancelled while waiting. The listener
            is stopped first.
    """
    if await context.token_manager.validate():
        logger.info("Existing tokens are valid")
        return True

    server = context.auth_server
    if not await server.start(open_browser=open_browser):
        logger.error(f"Could not start authentication: {server.last_error}")
        return False

    try:
        while not server.completed:
            await asyncio.sleep(poll_interval)
    finally:
        await _stop_quietly(context)

    logger.info("Authentication successful. Server stopped.")
    return True


async def _stop_quietly(context: AuthContext) -> None:
    try:
        await context.auth_server.stop()
    except Exception:
        logger.exception("Error stopping auth server")


async def run_authentication(
    context: AuthContext,
    open_browser: bool = True,
    poll_interval: float = POLL_INTERVAL,
) -> bool:
    """Run authenticate() and cancel it on SIGINT or SIGTERM.

    Returns:
        False when interrupted; success is never reported for a
        cancelled flow.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(authenticate(context, open_browser, poll_interval))

    interrupted = False

    def _interrupt() -> None:
        nonlocal interrupted
        interrupted = True
        task.cancel()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _interrupt)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        return await task
    except asyncio.CancelledError:
        if not interrupted:
            raise
        logger.warning("Authentication cancelled")
        return False
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
