"""Google authentication exceptions."""


class GoogleAuthError(Exception):
    """Base exception for Google authentication errors."""

    pass


class CredentialsNotFoundError(GoogleAuthError):
    """Raised when the OAuth client keys file is not found."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"OAuth keys file not found at {path}. "
            "Please download OAuth credentials from Google Cloud Console."
        )


class InvalidClientConfigError(GoogleAuthError):
    """Raised when the OAuth client keys file is malformed."""

    pass


class CorruptTokenError(GoogleAuthError):
    """Raised when the saved token file cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Token file at {path} is corrupt: {reason}")


class TokenError(GoogleAuthError):
    """Raised when there's an issue with the OAuth token."""

    pass


class AuthorizationRequired(GoogleAuthError):
    """Raised when an operation needs credentials the user has not granted yet."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Authentication required. Please run 'gcal-auth login' to authenticate."
        )
