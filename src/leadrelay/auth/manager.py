"""Token lifecycle manager.

Single source of truth for "is there a valid credential, and if not, make one
valid". Expired credentials are refreshed on demand; refreshes for the same
installation never run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..errors import (
    NoCredentialError,
    NoRefreshTokenError,
    RefreshFailedError,
    StorageError,
)
from ..oauth.client import OAuthClient
from ..oauth.storage import (
    AcquisitionMethod,
    Clock,
    CredentialRecord,
    TokenStore,
    mask_secret,
    utc_now,
)

logger = logging.getLogger(__name__)


class TokenManager:
    """Tracks expiry and refreshes the stored credential.

    Handles:
    - Loading the current credential
    - Expiry check (exact, no grace window)
    - Refresh via the token endpoint, persisted in place
    - Forced refresh after the CRM rejects an unexpired token

    Usage:
        manager = TokenManager(storage, oauth_client)

        # Valid credential (refreshes if expired)
        record = await manager.get_valid_credential()

        # Diagnostics
        status = manager.get_token_status()
    """

    def __init__(self, storage: TokenStore, oauth_client: OAuthClient, clock: Clock = utc_now):
        self.storage = storage
        self.oauth_client = oauth_client
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, installation_id: str) -> asyncio.Lock:
        lock = self._locks.get(installation_id)
        if lock is None:
            lock = self._locks[installation_id] = asyncio.Lock()
        return lock

    def _load(self) -> CredentialRecord:
        record = self.storage.get_current()
        if record is None:
            raise NoCredentialError()
        return record

    async def get_valid_credential(self) -> CredentialRecord:
        """Return a credential that is valid right now.

        Raises:
            NoCredentialError: Nothing has been acquired yet
            ReauthorizationRequiredError: Expired and cannot be refreshed
            RemoteUnavailableError: Token endpoint unreachable
        """
        record = self._load()

        if record.acquisition_method is AcquisitionMethod.SIMPLIFIED:
            return record

        if not record.is_expired(self._clock()):
            return record

        logger.info(
            "Credential %s for installation %s expired at %s, refreshing",
            record.id,
            record.installation_id,
            record.expires_at.isoformat() if record.expires_at else None,
        )
        return await self.refresh(record)

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        """Exchange the record's refresh token for a new access token.

        Raises:
            NoRefreshTokenError: Simplified credential or no refresh token
            RefreshFailedError: Provider rejected the refresh token
        """
        return await self._run_refresh(record, force=False)

    async def force_refresh(self, rejected: CredentialRecord | None = None) -> CredentialRecord:
        """Refresh the current credential regardless of its expiry.

        Used when the CRM rejects a token that has not expired locally
        (clock skew, provider-side revocation). Pass the ``rejected``
        credential so a token another task already rotated is reused
        instead of being refreshed a second time.
        """
        return await self._run_refresh(rejected or self._load(), force=True)

    def get_token_status(self) -> dict[str, Any]:
        """Get credential status summary for diagnostics. Never includes secrets."""
        record = self.storage.get_current()
        if record is None:
            return {
                "has_token": False,
                "message": "No credential stored. Install the app or complete OAuth authorization.",
            }

        now = self._clock()
        expires_at = record.expires_at
        return {
            "has_token": True,
            "id": record.id,
            "method": record.acquisition_method.value,
            "installation_id": record.installation_id,
            "domain": record.domain,
            "scope": record.scope,
            "status": record.status,
            "endpoint": record.client_endpoint,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_expired": record.is_expired(now),
            "seconds_remaining": record.expires_in_seconds(now),
            "has_refresh_token": bool(record.refresh_token),
            "updated_at": record.updated_at.isoformat(),
        }

    def clear_credentials(self) -> bool:
        """Drop the stored credential, forcing re-authorization."""
        removed = self.storage.clear()
        logger.warning("Stored credential cleared (removed=%s); re-authorization required", removed)
        return removed

    # Refresh internals

    @staticmethod
    def _ensure_refreshable(record: CredentialRecord) -> None:
        if record.acquisition_method is AcquisitionMethod.SIMPLIFIED:
            raise NoRefreshTokenError(
                "Simplified credentials cannot be refreshed; reinstall the app to re-authorize"
            )
        if not record.refresh_token:
            raise NoRefreshTokenError(
                f"Credential {record.id} has no refresh token; re-authorization required"
            )

    async def _run_refresh(self, record: CredentialRecord, force: bool) -> CredentialRecord:
        self._ensure_refreshable(record)

        # Once started, a refresh finishes even if the caller is cancelled:
        # abandoning it could lose a rotated refresh token.
        task = asyncio.ensure_future(self._refresh_locked(record, force))
        task.add_done_callback(_retrieve_orphaned_result)
        return await asyncio.shield(task)

    async def _refresh_locked(self, seen: CredentialRecord, force: bool) -> CredentialRecord:
        async with self._lock_for(seen.installation_id):
            current = self._load()
            now = self._clock()

            # Another task refreshed (or a new install landed) since ``seen`` was read.
            if current.access_token != seen.access_token and not current.is_expired(now):
                logger.info("Credential %s already refreshed by a concurrent task", current.id)
                return current
            if not force and not current.is_expired(now):
                return current

            self._ensure_refreshable(current)

            try:
                tokens = await self.oauth_client.refresh_tokens(current.refresh_token)
            except RefreshFailedError as e:
                logger.error(
                    "Refresh rejected for installation %s: %s (%s)",
                    current.installation_id,
                    e.error_code,
                    e.error_description,
                )
                raise

            now = self._clock()
            patch: dict[str, Any] = {
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or current.refresh_token,
                "expires_in": tokens.expires_in,
                "issued_at": now,
            }
            if tokens.scope:
                patch["scope"] = tokens.scope
            if tokens.client_endpoint:
                patch["client_endpoint"] = tokens.client_endpoint
            if tokens.server_endpoint:
                patch["server_endpoint"] = tokens.server_endpoint
            if tokens.status:
                patch["status"] = tokens.status

            if not self.storage.update(current.id, patch):
                raise StorageError(f"Credential {current.id} was replaced during refresh")

            refreshed = self._load()
            logger.info(
                "Refreshed credential %s for installation %s (expires_at=%s, access_token=%s, refresh_token rotated=%s)",
                refreshed.id,
                refreshed.installation_id,
                refreshed.expires_at.isoformat() if refreshed.expires_at else None,
                mask_secret(refreshed.access_token),
                refreshed.refresh_token != current.refresh_token,
            )
            return refreshed


def _retrieve_orphaned_result(task: asyncio.Task) -> None:
    # The shielded caller may be gone; read the outcome so it is not reported as lost.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Refresh task finished with %s", exc.__class__.__name__)
