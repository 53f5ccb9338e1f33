"""Durable storage for the single OAuth credential record."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gcal_auth.google.exceptions import CorruptTokenError

logger = logging.getLogger(__name__)

# Keys Authlib derives on its own; never persisted.
_DERIVED_KEYS = {"expires_at", "expires_in"}


@dataclass
class CredentialRecord:
    """Access/refresh token pair plus expiry metadata.

    ``expiry_date`` is epoch milliseconds, matching the on-disk format.
    Everything else (scope, token_type, id_token...) rides along in
    ``extra`` untouched.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expiry_date: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        extra = {
            k: v
            for k, v in data.items()
            if k not in ("access_token", "refresh_token", "expiry_date")
            and k not in _DERIVED_KEYS
        }
        expiry = data.get("expiry_date")
        return cls(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expiry_date=int(expiry) if expiry is not None else None,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        if self.access_token is not None:
            data["access_token"] = self.access_token
        if self.refresh_token is not None:
            data["refresh_token"] = self.refresh_token
        if self.expiry_date is not None:
            data["expiry_date"] = self.expiry_date
        return data

    @classmethod
    def from_oauth_token(cls, token: dict[str, Any]) -> CredentialRecord:
        """Convert an Authlib token (``expires_at`` in seconds).

        A raw token response with only ``expires_in`` is dated from now.
        """
        record = cls.from_dict(token)
        expires_at = token.get("expires_at")
        if expires_at is None and token.get("expires_in") is not None:
            expires_at = time.time() + float(token["expires_in"])
        if expires_at is not None:
            record.expiry_date = int(float(expires_at) * 1000)
        return record

    def to_oauth_token(self) -> dict[str, Any]:
        """Convert to the token dict Authlib clients expect."""
        token = self.to_dict()
        token.pop("expiry_date", None)
        if self.expiry_date is not None:
            token["expires_at"] = self.expiry_date // 1000
        return token

    def merged(self, update: CredentialRecord) -> CredentialRecord:
        """Apply a partial update, keeping the refresh token when it is omitted."""
        data = {**self.to_dict(), **update.to_dict()}
        data["refresh_token"] = update.refresh_token or self.refresh_token
        if data["refresh_token"] is None:
            del data["refresh_token"]
        return CredentialRecord.from_dict(data)

    def is_expired(self, now_ms: int, skew_ms: int = 0) -> bool:
        """Whether the access token is expired, or will be within ``skew_ms``."""
        if self.expiry_date is None:
            return not self.access_token
        return now_ms >= self.expiry_date - skew_ms


class CredentialStore:
    """JSON file holding one credential record, readable by its owner only.

    The store keeps no state of its own; callers serialize access.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CredentialRecord | None:
        """Read the record.

        Returns:
            The stored record, or None if there is no token file.

        Raises:
            CorruptTokenError: If the file is not a JSON object.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptTokenError(str(self.path), str(e)) from e

        if not isinstance(data, dict):
            raise CorruptTokenError(str(self.path), f"expected object, got {type(data).__name__}")

        try:
            return CredentialRecord.from_dict(data)
        except (TypeError, ValueError) as e:
            raise CorruptTokenError(str(self.path), str(e)) from e

    def save(self, record: CredentialRecord) -> None:
        """Write the record with 0600 permissions, replacing any existing file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # mkstemp creates the file 0600 so the token is never briefly exposed
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.write("\n")
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        logger.debug(f"Token record written to {self.path}")

    def clear(self) -> bool:
        """Remove the token file.

        Returns:
            True if a file was removed, False if there was none.
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
