"""
Credential store: one row per (account, provider).

``upsert`` is a single INSERT ... ON CONFLICT statement keyed on the pair,
so writes are atomic and last-write-wins.  Token contents are never
inspected here.
"""

import logging
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert

from connectors.models import Credential, Provider
from models.credential import ProviderCredential
from models.database import get_session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

_CONFLICT_KEYS: list[str] = ["account_id", "provider"]
_UPDATABLE_COLUMNS: tuple[str, ...] = (
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
    "api_domain",
    "provider_metadata",
)


def build_upsert_statement(
    account_id: str, provider: str, credential: Credential, now: Optional[datetime] = None
) -> Insert:
    """INSERT ... ON CONFLICT (account_id, provider) DO UPDATE for one credential."""
    now = now or datetime.utcnow()
    row: dict[str, Any] = {
        "account_id": account_id,
        "provider": provider,
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "expires_at": credential.expires_at,
        "scope": list(credential.scope),
        "api_domain": credential.api_domain,
        "provider_metadata": dict(credential.provider_metadata),
        "created_at": now,
        "updated_at": now,
    }
    stmt = pg_insert(ProviderCredential.__table__).values(row)
    update_cols = {col: getattr(stmt.excluded, col) for col in _UPDATABLE_COLUMNS}
    update_cols["updated_at"] = now
    return stmt.on_conflict_do_update(index_elements=_CONFLICT_KEYS, set_=update_cols)


class CredentialStore:
    """Keyed get/upsert/delete over ``provider_credentials``."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    async def get(self, account_id: str, provider: Provider | str) -> Optional[Credential]:
        """Return the stored credential, or None when the pair is not connected."""
        provider = Provider(provider)
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.account_id == account_id,
                    ProviderCredential.provider == provider.value,
                )
            )
            row = result.scalar_one_or_none()
        return row.to_credential() if row else None

    async def get_row(self, account_id: str, provider: Provider | str) -> Optional[ProviderCredential]:
        provider = Provider(provider)
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.account_id == account_id,
                    ProviderCredential.provider == provider.value,
                )
            )
            return result.scalar_one_or_none()

    async def upsert(self, account_id: str, provider: Provider | str, credential: Credential) -> None:
        provider = Provider(provider)
        async with self._session_factory() as session:
            await session.execute(build_upsert_statement(account_id, provider.value, credential))
            await session.commit()
        logger.info(
            "Stored credential",
            extra={"account_id": account_id, "provider": provider.value},
        )

    async def delete(self, account_id: str, provider: Provider | str) -> bool:
        """Remove the credential; returns whether a row existed."""
        provider = Provider(provider)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ProviderCredential).where(
                    ProviderCredential.account_id == account_id,
                    ProviderCredential.provider == provider.value,
                )
            )
            await session.commit()
        deleted = bool(result.rowcount)
        logger.info(
            "Deleted credential",
            extra={"account_id": account_id, "provider": provider.value, "existed": deleted},
        )
        return deleted

    async def list_connections(self) -> list[tuple[str, str]]:
        """Every connected (account_id, provider) pair."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderCredential.account_id, ProviderCredential.provider)
            )
            return [(row.account_id, row.provider) for row in result.all()]
