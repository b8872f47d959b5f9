"""
Token refresher: exchanges a refresh token for a new access token.

At most one refresh runs per (account, provider) at a time.  Concurrent
callers wait on the same lock and then find the already-refreshed
credential in the store instead of spending the refresh token twice
(providers that rotate refresh tokens would invalidate the loser).
"""

import asyncio
from datetime import datetime
import logging
from typing import Callable, Optional

from config import settings
from connectors.errors import Err, ErrorKind, Ok, ProviderError, Result
from connectors.models import Credential, Provider
from services.credentials import CredentialStore
from services.oauth import OAuthClient

logger = logging.getLogger(__name__)

# API keys and Slack bot tokens have no refresh grant
NON_REFRESHABLE: frozenset[Provider] = frozenset({Provider.FOLK, Provider.SLACK})

Clock = Callable[[], datetime]


class TokenRefresher:
    """Refreshes and persists OAuth credentials."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: Optional[OAuthClient] = None,
        clock: Clock = datetime.utcnow,
        buffer_seconds: Optional[int] = None,
    ) -> None:
        self._store = store
        self._oauth = oauth or OAuthClient()
        self._clock = clock
        self.buffer_seconds: int = (
            settings.TOKEN_REFRESH_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
        )
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, credential: Credential) -> asyncio.Lock:
        key = (credential.account_id, credential.provider.value)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def refresh(self, credential: Credential) -> Result[Credential]:
        """Get a new access token for ``credential`` and store it.

        Returns ``Err`` with NEEDS_RECONNECT when the credential cannot be
        refreshed at all, or with the classified token-endpoint failure.
        """
        provider = credential.provider.value
        if credential.provider in NON_REFRESHABLE or not credential.refresh_token:
            return Err(
                ProviderError(
                    ErrorKind.NEEDS_RECONNECT,
                    f"{provider} credential cannot be refreshed; reconnect required",
                    provider=provider,
                )
            )

        async with self._lock_for(credential):
            stored = await self._store.get(credential.account_id, credential.provider)
            if stored is None:
                return Err(
                    ProviderError(
                        ErrorKind.NEEDS_RECONNECT,
                        f"{provider} credential was disconnected",
                        provider=provider,
                    )
                )
            # Someone else refreshed while we waited for the lock
            if stored.access_token != credential.access_token and not stored.is_expired(self._clock()):
                logger.debug(
                    "Credential already refreshed by a concurrent caller",
                    extra={"account_id": credential.account_id, "provider": provider},
                )
                return Ok(stored)

            result = await self._oauth.refresh(stored)
            if isinstance(result, Err):
                logger.warning(
                    "Token refresh failed",
                    extra={
                        "account_id": credential.account_id,
                        "provider": provider,
                        "kind": result.kind.value,
                        "error": result.error.message,
                    },
                )
                return result

            refreshed = result.value
            await self._store.upsert(credential.account_id, credential.provider, refreshed)
            logger.info(
                "Refreshed access token",
                extra={
                    "account_id": credential.account_id,
                    "provider": provider,
                    "expires_at": refreshed.expires_at.isoformat() if refreshed.expires_at else None,
                    "rotated_refresh_token": refreshed.refresh_token != stored.refresh_token,
                },
            )
            return Ok(refreshed)

    async def ensure_fresh(self, credential: Credential) -> Result[Credential]:
        """Refresh only when the token expires within the buffer window."""
        if not credential.is_expired(self._clock(), self.buffer_seconds):
            return Ok(credential)
        return await self.refresh(credential)
