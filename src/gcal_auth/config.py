"""Centralized credential configuration.

Credentials live in the gcal-auth repo root by default:
    .env                   - optional overrides (GCAL_TOKEN_PATH, etc.)
    gcp-oauth.keys.json    - Google OAuth client keys
    .gcp-saved-tokens.json - OAuth tokens written by the auth flow

This module auto-loads the .env file on import, so overrides set there
apply to every gcal-auth module and to code that embeds it.
"""

import os
from pathlib import Path

# Repository root (where this package is installed from)
# __file__ is src/gcal_auth/config.py, so 3 levels up
REPO_ROOT = Path(__file__).parent.parent.parent

ENV_FILE = REPO_ROOT / ".env"

DEFAULT_PORT_START = 3000
DEFAULT_PORT_END = 3004
DEFAULT_HOST = "localhost"


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load environment variables from a file.

    Args:
        env_path: Path to .env file.

    Returns:
        Dictionary of loaded variables.
    """
    loaded = {}
    if not env_path.exists():
        return loaded

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            if (value.startswith('"') and value.endswith('"')) or (
                value.startswith("'") and value.endswith("'")
            ):
                value = value[1:-1]

            # Existing environment wins
            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def keys_path() -> Path:
    """Path to the OAuth client keys file."""
    override = os.environ.get("GCAL_OAUTH_KEYS")
    return Path(override).expanduser() if override else REPO_ROOT / "gcp-oauth.keys.json"


def token_path() -> Path:
    """Path to the saved OAuth token file."""
    override = os.environ.get("GCAL_TOKEN_PATH")
    return Path(override).expanduser() if override else REPO_ROOT / ".gcp-saved-tokens.json"


def auth_host() -> str:
    """Host the local auth listener binds to."""
    return os.environ.get("GCAL_AUTH_HOST") or DEFAULT_HOST


def auth_port_range() -> range:
    """Candidate ports for the local auth listener, inclusive of the end port."""
    start = _env_int("GCAL_AUTH_PORT_START", DEFAULT_PORT_START)
    end = _env_int("GCAL_AUTH_PORT_END", DEFAULT_PORT_END)
    if end < start:
        raise ValueError(f"Invalid auth port range: {start}-{end}")
    return range(start, end + 1)


def get_credential_status() -> dict:
    """Get status of the configured credential files.

    Returns:
        Dictionary with credential status.
    """
    keys = keys_path()
    token = token_path()
    return {
        "repo_root": str(REPO_ROOT),
        "env_file": ENV_FILE.exists(),
        "keys": {"path": str(keys), "exists": keys.exists()},
        "token": {"path": str(token), "exists": token.exists()},
        "ports": f"{auth_port_range().start}-{auth_port_range().stop - 1}",
    }


# Auto-load .env from repo root on import
_loaded = _load_env_file(ENV_FILE)
