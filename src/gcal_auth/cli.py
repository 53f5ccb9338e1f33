"""CLI for gcal-auth - Google Calendar OAuth credential management.

Usage:
    gcal-auth status                  # Show keys/token status
    gcal-auth login                   # Interactive browser login via local server
    gcal-auth refresh                 # Refresh the OAuth token if needed
    gcal-auth revoke                  # Revoke the token with Google and delete it
    gcal-auth logout                  # Delete the local token file
    gcal-auth import <path>           # Import OAuth client keys
    gcal-auth test                    # List calendars with the saved token

Logs go to stderr; stdout stays free for a tool-protocol transport.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import shutil
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gcal_auth.context import AuthContext


def _run(command: Callable[[AuthContext], Awaitable[int]]) -> int:
    """Run an async command against a fresh auth context."""
    from gcal_auth.context import create_context

    async def runner() -> int:
        context = create_context()
        try:
            return await command(context)
        finally:
            await context.aclose()

    return asyncio.run(runner())


def cmd_status() -> int:
    """Show keys and token status."""
    from gcal_auth.config import get_credential_status

    status = get_credential_status()

    print("=" * 60)
    print("GCAL-AUTH CREDENTIAL STATUS")
    print("=" * 60)
    print()
    print(f"Repository : {status['repo_root']}")
    print(f"OAuth keys : {'[x]' if status['keys']['exists'] else '[ ]'} {status['keys']['path']}")
    print(f"Token file : {'[x]' if status['token']['exists'] else '[ ]'} {status['token']['path']}")
    print(f"Auth ports : {status['ports']}")
    print()

    async def show(context: AuthContext) -> int:
        await context.token_manager.load()
        return _print_token_info(context)

    return _run(show)


def _print_token_info(context: AuthContext) -> int:
    info = context.token_manager.get_token_info()

    if info["status"] == "no_token":
        print("No token found - run 'gcal-auth login'")
        return 1

    print(f"Status     : {info['status']}")
    print(f"Scopes     : {', '.join(info.get('scopes', [])) or 'unknown'}")
    print(f"Expires in : {info.get('expires_in', 'unknown')}")
    print(f"Refresh    : {'yes' if info['has_refresh_token'] else 'no'}")
    print(f"Refreshed  : {info.get('last_refresh') or 'never'}")
    return 0


def cmd_login(no_browser: bool = False) -> int:
    """Interactive OAuth login through the local auth server."""
    from gcal_auth.google import run_authentication

    print("=" * 60)
    print("GCAL-AUTH GOOGLE LOGIN")
    print("=" * 60)

    async def login(context: AuthContext) -> int:
        if await context.token_manager.validate():
            print("\nAlready authorized with valid token")
            return _print_token_info(context)

        server = context.auth_server
        print(f"\nStarting auth server ({server.ports[0]}-{server.ports[-1]})...")
        if no_browser:
            print("Open the URL printed once the server is listening.")

        task = asyncio.ensure_future(
            run_authentication(context, open_browser=not no_browser)
        )
        # Print the local URL once the listener is up
        while not task.done() and server.running_port() is None:
            await asyncio.sleep(0.05)
        port = server.running_port()
        if port is not None:
            print(f"\nVisit http://localhost:{port}/ to authorize.\n")

        if not await task:
            if server.last_error:
                print(f"\nAuthentication failed: {server.last_error}")
            else:
                print("\nAuthentication cancelled.")
            return 1

        print("\nAuthentication successful.")
        return _print_token_info(context)

    return _run(login)


def cmd_refresh() -> int:
    """Refresh the OAuth token if it is expired or close to expiry."""
    print("=" * 60)
    print("REFRESHING OAUTH TOKEN")
    print("=" * 60)

    async def refresh(context: AuthContext) -> int:
        if not await context.token_manager.validate():
            print("\nNo valid token - run 'gcal-auth login'")
            return 1
        print("\nToken is valid.")
        return _print_token_info(context)

    return _run(refresh)


def cmd_revoke() -> int:
    """Revoke the token with Google and delete it locally."""

    async def revoke(context: AuthContext) -> int:
        await context.token_manager.load()
        await context.token_manager.revoke()
        print("Token revoked and local cache cleared")
        return 0

    return _run(revoke)


def cmd_logout() -> int:
    """Delete the local token file without contacting Google."""

    async def logout(context: AuthContext) -> int:
        await context.token_manager.clear()
        print(f"Removed {context.token_manager.token_path}")
        return 0

    return _run(logout)


def cmd_import(source_path: str) -> int:
    """Import OAuth client keys from a file."""
    from gcal_auth.config import keys_path

    source = Path(source_path).expanduser()
    target = keys_path()

    if not source.exists():
        print(f"Error: File not found: {source}")
        return 1

    try:
        with open(source) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}")
        return 1

    if not isinstance(data, dict) or ("installed" not in data and "web" not in data):
        print("Error: Invalid OAuth credentials format")
        print("Expected 'installed' or 'web' key in JSON")
        return 1

    key = "installed" if "installed" in data else "web"
    client_id = data[key].get("client_id", "unknown")

    if source.resolve() == target.resolve():
        print(f"OAuth credentials already in place at {target}")
        return 0

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)

    print("Imported OAuth credentials")
    print(f"  From: {source}")
    print(f"  To:   {target}")
    print(f"  Client ID: {client_id[:40]}...")
    print()
    print("Next: Run 'gcal-auth login' to authorize")
    return 0


def cmd_test() -> int:
    """Test the saved credential against the Calendar API."""

    async def test(context: AuthContext) -> int:
        from gcal_auth.google import AuthorizationRequired

        try:
            await context.require_auth()
        except AuthorizationRequired as e:
            print(f"  [ ] {e}")
            return 1

        try:
            service = context.token_manager.build_service("calendar", "v3")
            result = await asyncio.to_thread(service.calendarList().list().execute)
        except Exception as e:
            print(f"  [✗] {e}")
            return 1

        count = len(result.get("items", []))
        print(f"  [✓] connected - {count} calendars")
        return 0

    print("Google Calendar:")
    return _run(test)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="gcal-auth",
        description="OAuth credential management for the Google Calendar tool server",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("status", help="Show credential status")

    login_parser = subparsers.add_parser("login", help="Interactive OAuth login")
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't open browser automatically",
    )

    subparsers.add_parser("refresh", help="Refresh token if needed")
    subparsers.add_parser("revoke", help="Revoke token with Google and delete it")
    subparsers.add_parser("logout", help="Delete the local token file")

    import_parser = subparsers.add_parser("import", help="Import OAuth client keys")
    import_parser.add_argument("path", help="Path to downloaded credentials JSON")

    subparsers.add_parser("test", help="Test the credential against the Calendar API")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "status":
        return cmd_status()
    elif args.command == "login":
        return cmd_login(no_browser=args.no_browser)
    elif args.command == "refresh":
        return cmd_refresh()
    elif args.command == "revoke":
        return cmd_revoke()
    elif args.command == "logout":
        return cmd_logout()
    elif args.command == "import":
        return cmd_import(args.path)
    elif args.command == "test":
        return cmd_test()

    return 0


if __name__ == "__main__":
    sys.exit(main())
