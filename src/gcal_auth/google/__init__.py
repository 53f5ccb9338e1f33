"""Google OAuth credential lifecycle for the calendar scope."""

from gcal_auth.google.exceptions import (
    AuthorizationRequired,
    CorruptTokenError,
    CredentialsNotFoundError,
    GoogleAuthError,
    InvalidClientConfigError,
    TokenError,
)
from gcal_auth.google.flow import authenticate, run_authentication
from gcal_auth.google.oauth import OAuthClientConfig, create_oauth_client, load_client_config
from gcal_auth.google.server import AuthServer, FlowState
from gcal_auth.google.store import CredentialRecord, CredentialStore
from gcal_auth.google.token_manager import TokenManager

__all__ = [
    "AuthServer",
    "FlowState",
    "TokenManager",
    "CredentialRecord",
    "CredentialStore",
    "OAuthClientConfig",
    "create_oauth_client",
    "load_client_config",
    "authenticate",
    "run_authentication",
    "GoogleAuthError",
    "CredentialsNotFoundError",
    "InvalidClientConfigError",
    "CorruptTokenError",
    "TokenError",
    "AuthorizationRequired",
]
