"""OAuth token lifecycle for the calendar client.

The TokenManager owns the in-memory credential record and the base
Authlib client. It decides when a refresh is needed, performs it, and
persists every token update through a single locked merge path so that
explicit saves and the client's own background refreshes never
interleave their read-modify-write.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build

from gcal_auth import config
from gcal_auth.google.exceptions import CorruptTokenError, TokenError
from gcal_auth.google.oauth import REVOKE_URL, SCOPES, TOKEN_URL
from gcal_auth.google.store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)


class TokenManager:
    """Load, refresh, save and clear the OAuth credential record.

    Example:
        >>> manager = TokenManager(create_oauth_client(load_client_config(path)))
        >>> if not await manager.validate():
        ...     print("Run 'gcal-auth login'")
    """

    # Refresh this long before the real expiry
    EXPIRY_SKEW = timedelta(minutes=5)

    def __init__(
        self,
        client: AsyncOAuth2Client,
        token_path: str | Path | None = None,
        store: CredentialStore | None = None,
    ):
        """Initialize the token manager.

        Args:
            client: Base OAuth client. Its ``update_token`` hook is replaced
                so background refreshes are persisted here.
            token_path: Token file location. Defaults to config.token_path().
            store: Pre-built store, mainly for tests. Overrides token_path.
        """
        self.store = store or CredentialStore(token_path or config.token_path())
        self.client = client
        self.client.update_token = self.on_background_refresh

        self._record: CredentialRecord | None = None
        self._lock = asyncio.Lock()
        self._refresh_outcome: bool | None = None

        self.last_refresh: datetime | None = None
        self.refresh_count = 0

    @property
    def token_path(self) -> Path:
        return self.store.path

    @property
    def record(self) -> CredentialRecord | None:
        return self._record

    @property
    def has_access_token(self) -> bool:
        return bool(self._record and self._record.access_token)

    def _adopt(self, record: CredentialRecord | None) -> None:
        self._record = record
        self.client.token = record.to_oauth_token() if record else None

    async def load(self) -> bool:
        """Load the saved record into memory.

        A corrupt file is removed and reported as missing.

        Returns:
            True if a record was loaded.
        """
        async with self._lock:
            try:
                record = await asyncio.to_thread(self.store.load)
            except CorruptTokenError as e:
                logger.error(f"Error loading tokens: {e}")
                await self._discard_corrupt()
                return False

        if record is None:
            logger.info(f"No token file found at: {self.token_path}")
            return False

        self._adopt(record)
        return True

    async def _discard_corrupt(self) -> None:
        try:
            await asyncio.to_thread(self.store.clear)
            logger.warning("Removed potentially corrupted token file")
        except OSError as e:
            logger.warning(f"Could not remove corrupted token file: {e}")

    async def validate(self) -> bool:
        """Check that a usable access token exists, refreshing if needed.

        Returns:
            True if the process holds valid credentials.
        """
        if not self.has_access_token:
            if not await self.load():
                return False
            if not self.has_access_token:
                return False

        return await self.refresh_if_needed()

    async def refresh_if_needed(self) -> bool:
        """Refresh the access token if it is expired or about to expire.

        Returns:
            True if a valid access token is held afterwards. False means
            the user has to go through the browser flow again.
        """
        record = self._record or CredentialRecord()
        now_ms = int(time.time() * 1000)
        skew_ms = int(self.EXPIRY_SKEW.total_seconds() * 1000)

        if record.is_expired(now_ms, skew_ms):
            if record.refresh_token:
                logger.info("Auth token expired or nearing expiry, refreshing...")
                return await self._refresh(record.refresh_token)
            logger.warning("Token expired and no refresh token available. Please re-authenticate.")
            return False

        return bool(record.access_token)

    async def _refresh(self, refresh_token: str) -> bool:
        previous = self._record.access_token if self._record else None
        self._refresh_outcome = None
        try:
            token = await self.client.refresh_token(TOKEN_URL, refresh_token=refresh_token)
        except AuthlibBaseError as e:
            if e.error == "invalid_grant":
                logger.warning(
                    "Error refreshing auth token: Invalid grant. "
                    "Token likely expired or revoked. Please re-authenticate."
                )
            else:
                logger.error(f"Error refreshing auth token: {e}")
            return False
        except Exception:
            logger.exception("Error refreshing auth token")
            return False

        # Set by on_background_refresh when the client awaited its hook
        stored = self._refresh_outcome
        if stored is None:
            stored = await self._store_refreshed(token, refresh_token)
        if not stored:
            return False

        record = self._record
        if (
            not record
            or not record.access_token
            or record.access_token == previous
            or record.is_expired(int(time.time() * 1000))
        ):
            logger.error("Refresh did not produce a new usable access token")
            return False

        logger.info("Token refreshed successfully")
        return True

    async def _store_refreshed(
        self,
        token: dict[str, Any] | None,
        refresh_token: str | None = None,
        access_token: str | None = None,
    ) -> bool:
        """Merge a refreshed token into the store.

        Returns:
            False if the token carries no access token or could not be
            written; both are logged.
        """
        if not token or not (token.get("access_token") or access_token):
            logger.error("Received invalid tokens during refresh")
            return False

        update = self._update_from_token(token, refresh_token, access_token)
        try:
            await self._merge_and_persist(update)
        except OSError as e:
            logger.error(f"Error saving updated tokens: {e}")
            return False

        self._mark_refreshed()
        return True

    @staticmethod
    def _update_from_token(
        token: dict[str, Any],
        refresh_token: str | None = None,
        access_token: str | None = None,
    ) -> CredentialRecord:
        update = CredentialRecord.from_oauth_token(dict(token))
        if access_token:
            update.access_token = access_token
        if not update.refresh_token and refresh_token:
            update.refresh_token = refresh_token
        return update

    def _mark_refreshed(self) -> None:
        self.last_refresh = datetime.now()
        self.refresh_count += 1

    async def _merge_and_persist(self, update: CredentialRecord) -> CredentialRecord:
        """Merge ``update`` into the persisted record and write it back.

        The persisted record is re-read under the lock so the merge always
        starts from the latest write, never from an older in-memory copy.
        """
        async with self._lock:
            try:
                current = await asyncio.to_thread(self.store.load)
            except CorruptTokenError as e:
                logger.warning(f"Overwriting corrupt token file: {e}")
                current = None

            merged = (current or CredentialRecord()).merged(update)
            await asyncio.to_thread(self.store.save, merged)
            self._adopt(merged)
            return merged

    async def save(self, record: CredentialRecord | dict[str, Any]) -> CredentialRecord:
        """Persist a (possibly partial) token update.

        Args:
            record: Credential record, or an Authlib token dict.

        Returns:
            The merged record now on disk.

        Raises:
            OSError: If the token file cannot be written.
        """
        if isinstance(record, dict):
            record = CredentialRecord.from_oauth_token(record)

        try:
            merged = await self._merge_and_persist(record)
        except OSError as e:
            logger.error(f"Error saving tokens: {e}")
            raise

        logger.info(f"Tokens saved successfully to: {self.token_path}")
        return merged

    async def on_background_refresh(
        self,
        token: dict[str, Any],
        refresh_token: str | None = None,
        access_token: str | None = None,
    ) -> None:
        """Authlib ``update_token`` hook.

        Runs inside whatever API call triggered the refresh, so invalid
        tokens and storage errors are logged rather than raised into that
        call.
        """
        self._refresh_outcome = await self._store_refreshed(token, refresh_token, access_token)
        if self._refresh_outcome:
            logger.info("Tokens updated and saved")

    async def clear(self) -> None:
        """Forget the in-memory credential and delete the token file."""
        async with self._lock:
            self._adopt(None)
            removed = await asyncio.to_thread(self.store.clear)

        if removed:
            logger.info("Tokens cleared successfully")
        else:
            logger.info("Token file already deleted")

    async def revoke(self) -> None:
        """Revoke the token with Google, then clear local storage."""
        record = self._record
        token = record and (record.refresh_token or record.access_token)
        if not token:
            logger.warning("No token to revoke")
        else:
            try:
                response = await self.client.request(
                    "POST", REVOKE_URL, params={"token": token}, withhold_token=True
                )
                if response.status_code != 200:
                    logger.warning(f"Remote revoke returned HTTP {response.status_code}")
            except httpx.HTTPError as e:
                logger.warning(f"Failed to revoke token remotely: {e}")

        await self.clear()
        logger.info("Token revoked successfully")

    def get_credentials(self) -> GoogleCredentials:
        """Get Google Credentials object for API client libraries.

        Call validate() first; this does not refresh. The handle is meant
        for one batch of calls: if google-auth refreshes it on its own, the
        new token is not written back to the token file. Long-running
        callers should use AuthContext.authorized_client(), whose refreshes
        are persisted.

        Raises:
            TokenError: If no access token is held.
        """
        record = self._record
        if not record or not record.access_token:
            raise TokenError("Not authorized")

        expiry = None
        if record.expiry_date is not None:
            # google-auth compares against naive UTC
            expiry = datetime.fromtimestamp(record.expiry_date / 1000, tz=timezone.utc).replace(
                tzinfo=None
            )

        scope = record.extra.get("scope") or SCOPES["calendar"]
        return GoogleCredentials(
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=TOKEN_URL,
            client_id=self.client.client_id,
            client_secret=self.client.client_secret,
            scopes=scope.split(),
            expiry=expiry,
        )

    def build_service(self, service_name: str = "calendar", version: str = "v3"):
        """Build a Google API service with current credentials."""
        return build(
            service_name, version, credentials=self.get_credentials(), cache_discovery=False
        )

    def get_token_info(self) -> dict[str, Any]:
        """Get information about the current token.

        Returns:
            Dictionary with token status, scopes, expiry, etc.
        """
        record = self._record
        if not record or not (record.access_token or record.refresh_token):
            return {"status": "no_token"}

        if record.expiry_date is not None:
            expires_in = record.expiry_date / 1000 - time.time()
            expires_str = str(timedelta(seconds=int(max(0, expires_in))))
        else:
            expires_str = "unknown"

        now_ms = int(time.time() * 1000)
        is_expired = record.is_expired(now_ms, int(self.EXPIRY_SKEW.total_seconds() * 1000))

        return {
            "status": "expired" if is_expired else "valid",
            "scopes": (record.extra.get("scope") or "").split(),
            "expires_in": expires_str,
            "has_refresh_token": bool(record.refresh_token),
            "refresh_count": self.refresh_count,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "token_path": str(self.token_path),
        }

    async def aclose(self) -> None:
        await self.client.aclose()
