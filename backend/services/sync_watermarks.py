"""
Sync watermark store.

``try_acquire`` is the only cross-run serialization point: it flips a row to
``in_progress`` with a single conditional UPDATE, so of two racing runs at
most one gets the row back.  An ``in_progress`` row whose lease has expired
belongs to a crashed worker and may be taken over.

Every later write is fenced on the run's ``started_at`` so a run that lost
its lease can no longer move the cursor or end the new owner's run.
"""

from datetime import datetime, timedelta
import logging
from typing import Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from config import settings
from connectors.base import SyncCancelledError
from connectors.errors import ProviderError
from connectors.models import Provider
from models.database import get_session
from models.sync_watermark import SyncWatermark
from services.credentials import SessionFactory

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Reads and transitions ``sync_watermarks`` rows."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        lease_seconds: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.lease_seconds: int = lease_seconds or settings.SYNC_LEASE_TIMEOUT_SECONDS

    async def get(self, account_id: str, provider: Provider | str) -> Optional[SyncWatermark]:
        provider = Provider(provider)
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncWatermark).where(
                    SyncWatermark.account_id == account_id,
                    SyncWatermark.provider == provider.value,
                )
            )
            return result.scalar_one_or_none()

    async def try_acquire(
        self, account_id: str, provider: Provider | str, now: Optional[datetime] = None
    ) -> Optional[SyncWatermark]:
        """Move the watermark to ``in_progress``; None when another run holds it."""
        provider = Provider(provider)
        now = now or datetime.utcnow()
        async with self._session_factory() as session:
            await session.execute(
                pg_insert(SyncWatermark.__table__)
                .values(account_id=account_id, provider=provider.value, status="idle", records_synced=0)
                .on_conflict_do_nothing(index_elements=["account_id", "provider"])
            )
            result = await session.execute(
                update(SyncWatermark)
                .where(
                    SyncWatermark.account_id == account_id,
                    SyncWatermark.provider == provider.value,
                    or_(
                        SyncWatermark.status != "in_progress",
                        SyncWatermark.lease_expires_at.is_(None),
                        SyncWatermark.lease_expires_at < now,
                    ),
                )
                .values(
                    status="in_progress",
                    # A run that starts from page 1 opens a new window; a resumed run keeps it
                    window_started_at=case(
                        (SyncWatermark.cursor.is_(None), now),
                        else_=func.coalesce(
                            SyncWatermark.window_started_at, SyncWatermark.started_at, now
                        ),
                    ),
                    started_at=now,
                    last_run_at=now,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                    records_synced=0,
                    error_message=None,
                    error_kind=None,
                )
                .returning(SyncWatermark)
                .execution_options(synchronize_session=False)
            )
            watermark = result.scalar_one_or_none()
            await session.commit()

        if watermark is None:
            logger.info(
                "Sync already in progress, not starting another",
                extra={"account_id": account_id, "provider": provider.value},
            )
        return watermark

    async def save_cursor(
        self,
        account_id: str,
        provider: Provider | str,
        cursor: Optional[str],
        records_synced: int,
        run_started_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist the resumption point and extend the lease.

        Raises:
            SyncCancelledError: the lease was taken over by another run.
        """
        provider = Provider(provider)
        now = now or datetime.utcnow()
        updated = await self._update(
            account_id,
            provider,
            run_started_at,
            cursor=cursor,
            records_synced=records_synced,
            lease_expires_at=now + timedelta(seconds=self.lease_seconds),
        )
        if not updated:
            raise SyncCancelledError("Sync lease lost to another run")

    async def complete(
        self,
        account_id: str,
        provider: Provider | str,
        cursor: Optional[str],
        records_synced: int,
        exhausted: bool,
        run_started_at: datetime,
        window_started_at: Optional[datetime] = None,
    ) -> bool:
        """Mark the run completed; False when the lease was lost.

        ``exhausted`` means every page was read: the cursor is cleared and
        ``last_completed_at`` advances to the start of the window, which is
        the start of the run that began from page 1, not of a resumed run.
        A capped run keeps its cursor so the next run continues where this
        one stopped.
        """
        provider = Provider(provider)
        values: dict[str, object] = {
            "status": "completed",
            "cursor": None if exhausted else cursor,
            "records_synced": records_synced,
            "lease_expires_at": None,
            "error_message": None,
            "error_kind": None,
        }
        if exhausted:
            values["last_completed_at"] = window_started_at or run_started_at
        return await self._update(account_id, provider, run_started_at, **values)

    async def fail(
        self,
        account_id: str,
        provider: Provider | str,
        error: ProviderError | Exception,
        records_synced: int,
        run_started_at: datetime,
    ) -> bool:
        """Mark the run failed; the cursor is kept for resume.

        Cancellations record no error kind, so they never prompt the user.
        Returns False when the lease was lost and the row belongs to another run.
        """
        provider = Provider(provider)
        kind: Optional[str] = None
        if isinstance(error, ProviderError):
            kind = error.kind.value
        elif not isinstance(error, SyncCancelledError):
            kind = "fatal"
        return await self._update(
            account_id,
            provider,
            run_started_at,
            status="failed",
            records_synced=records_synced,
            lease_expires_at=None,
            error_message=str(error)[:2000],
            error_kind=kind,
        )

    async def _update(
        self, account_id: str, provider: Provider, run_started_at: datetime, **values: object
    ) -> bool:
        """Write to the row only while this run still owns the lease."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncWatermark)
                .where(
                    SyncWatermark.account_id == account_id,
                    SyncWatermark.provider == provider.value,
                    SyncWatermark.status == "in_progress",
                    SyncWatermark.started_at == run_started_at,
                )
                .values(**values)
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning(
                "Sync lease lost, dropping watermark write",
                extra={"account_id": account_id, "provider": provider.value},
            )
            return False
        return True
