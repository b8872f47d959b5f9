"""
Sync orchestrator: drives one resumable run for an (account, provider).

Per run:
1. Acquire the watermark lease (idle/completed/failed -> in_progress)
2. Make sure the access token is fresh
3. Page through the adapter, persisting each new cursor *before* the page's
   records are processed
4. Finish as ``completed`` (pages exhausted, or the per-run record cap hit)
   or ``failed`` (first unrecoverable error)

The stored cursor already points past a page while its records are being
processed, so a crash mid-page resumes at the next page and the rest of the
interrupted page is not redelivered.  A run that loses its lease to another
run (see services.sync_watermarks) stops as cancelled.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from config import settings
from connectors.base import BaseConnector, SyncCancelledError
from connectors.errors import Err, ErrorKind, ProviderError, Result
from connectors.models import CanonicalDeal, Credential, DealPage, Provider
from connectors.registry import get_connector_class
from services.credentials import CredentialStore
from services.deals import DealRepository
from services.emails import EmailStore
from services.normalizer import normalize
from services.retry import Sleep, with_retry
from services.sync_watermarks import WatermarkStore
from services.token_refresher import TokenRefresher

logger = logging.getLogger(__name__)

# (account_id, provider, records) -> number of records stored
RecordSink = Callable[[str, Provider, Sequence[Any]], Awaitable[int]]
ConnectorFactory = Callable[[Provider], BaseConnector]


class SyncAlreadyRunningError(RuntimeError):
    """Another run holds the watermark lease for this (account, provider)."""


class CredentialNotFoundError(LookupError):
    """The provider is not connected for this account."""


@dataclass
class SyncRunResult:
    """Outcome of one orchestrator run."""

    account_id: str
    provider: str
    status: str  # completed | failed | cancelled
    records_synced: int = 0
    skipped: int = 0
    pages: int = 0
    exhausted: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def needs_reconnect(self) -> bool:
        return self.error_kind == ErrorKind.NEEDS_RECONNECT.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "account_id": self.account_id,
            "provider": self.provider,
            "records_synced": self.records_synced,
            "skipped": self.skipped,
            "pages": self.pages,
            "exhausted": self.exhausted,
            "error": self.error,
            "error_kind": self.error_kind,
            "needs_reconnect": self.needs_reconnect,
        }


def default_connector_factory(provider: Provider) -> BaseConnector:
    return get_connector_class(provider.value)()


class DealSink:
    """Normalizes raw CRM records and upserts them as canonical deals."""

    def __init__(self, repository: Optional[DealRepository] = None) -> None:
        self._repository = repository or DealRepository()

    async def __call__(self, account_id: str, provider: Provider, records: Sequence[Any]) -> int:
        deals: list[CanonicalDeal] = []
        for record in records:
            try:
                deals.append(normalize(provider, record))
            except ValueError as exc:
                logger.warning(
                    "Skipping record that cannot be normalized",
                    extra={
                        "provider": provider.value,
                        "kind": ErrorKind.SCHEMA_MISMATCH.value,
                        "error": str(exc),
                    },
                )
        return await self._repository.upsert_deals(account_id, deals)


class EmailSink:
    """Stores Gmail messages for the mailbox ingest."""

    def __init__(self, store: Optional[EmailStore] = None) -> None:
        self._store = store or EmailStore()

    async def __call__(self, account_id: str, provider: Provider, records: Sequence[Any]) -> int:
        return await self._store.upsert_messages(account_id, records)


class SyncOrchestrator:
    """Runs syncs; every collaborator is injectable for tests."""

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        refresher: Optional[TokenRefresher] = None,
        watermarks: Optional[WatermarkStore] = None,
        connector_factory: ConnectorFactory = default_connector_factory,
        sinks: Optional[dict[Provider, RecordSink]] = None,
        sleep: Sleep = asyncio.sleep,
        max_records: Optional[int] = None,
    ) -> None:
        self._credentials = credentials or CredentialStore()
        self._refresher = refresher or TokenRefresher(self._credentials)
        self._watermarks = watermarks or WatermarkStore()
        self._connector_factory = connector_factory
        self._sinks: dict[Provider, RecordSink] = sinks or {}
        self._sleep = sleep
        self.max_records: int = max_records or settings.SYNC_MAX_RECORDS_PER_RUN

    def _sink_for(self, provider: Provider) -> RecordSink:
        if provider in self._sinks:
            return self._sinks[provider]
        if provider is Provider.GMAIL:
            sink: RecordSink = EmailSink()
        else:
            sink = DealSink()
        self._sinks[provider] = sink
        return sink

    def _since_for(self, provider: Provider, last_completed_at: Optional[datetime]) -> Optional[datetime]:
        """Incremental window start; only the mailbox ingest is windowed.

        CRM adapters always re-read every deal, so they get None.
        """
        if provider is not Provider.GMAIL:
            return None
        if last_completed_at is None:
            return datetime.utcnow() - timedelta(days=settings.SYNC_INITIAL_WINDOW_DAYS)
        return last_completed_at - timedelta(minutes=settings.SYNC_OVERLAP_MINUTES)

    async def run(
        self,
        account_id: str,
        provider: Provider | str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncRunResult:
        """Run one sync.

        Raises:
            ValueError: ``provider`` has no data adapter.
            CredentialNotFoundError: the provider is not connected.
            SyncAlreadyRunningError: another run holds the lease.
        """
        provider = Provider(provider)
        connector = self._connector_factory(provider)
        sink = self._sink_for(provider)

        credential = await self._credentials.get(account_id, provider)
        if credential is None:
            raise CredentialNotFoundError(f"{provider.value} is not connected for account {account_id}")

        watermark = await self._watermarks.try_acquire(account_id, provider)
        if watermark is None:
            raise SyncAlreadyRunningError(
                f"A {provider.value} sync is already running for account {account_id}"
            )

        run_started_at: datetime = watermark.started_at
        result = SyncRunResult(
            account_id=account_id,
            provider=provider.value,
            status="in_progress",
            started_at=run_started_at,
        )
        cursor: Optional[str] = watermark.cursor
        since = self._since_for(provider, watermark.last_completed_at)
        logger.info(
            "Starting %s sync for account %s",
            provider.value,
            account_id,
            extra={"account_id": account_id, "provider": provider.value, "resuming": bool(cursor)},
        )

        try:
            credential = _unwrap(await self._refresher.ensure_fresh(credential))

            while True:
                await self._check_cancelled(account_id, provider, cancel_event)

                page, credential = await self._fetch_page(connector, credential, cursor, since)
                result.pages += 1
                result.skipped += page.skipped

                cursor = page.next_cursor
                await self._watermarks.save_cursor(
                    account_id, provider, cursor, result.records_synced, run_started_at
                )

                if page.items:
                    await sink(account_id, provider, page.items)
                    result.records_synced += len(page.items)

                if not cursor:
                    result.exhausted = True
                    break
                if result.records_synced >= self.max_records:
                    logger.info(
                        "Reached per-run record cap, resuming next run",
                        extra={
                            "account_id": account_id,
                            "provider": provider.value,
                            "records_synced": result.records_synced,
                        },
                    )
                    break

        except SyncCancelledError as exc:
            result.status = "cancelled"
            result.error = str(exc)
            await self._watermarks.fail(account_id, provider, exc, result.records_synced, run_started_at)
            logger.info(
                "Sync cancelled",
                extra={"account_id": account_id, "provider": provider.value, "reason": str(exc)},
            )
            return result

        except ProviderError as exc:
            result.status = "failed"
            result.error = exc.message
            result.error_kind = exc.kind.value
            await self._watermarks.fail(account_id, provider, exc, result.records_synced, run_started_at)
            logger.warning(
                "Sync failed",
                extra={
                    "account_id": account_id,
                    "provider": provider.value,
                    "kind": exc.kind.value,
                    "error": exc.message,
                },
            )
            return result

        except Exception as exc:
            result.status = "failed"
            result.error = str(exc)
            result.error_kind = ErrorKind.FATAL.value
            await self._watermarks.fail(account_id, provider, exc, result.records_synced, run_started_at)
            logger.exception(
                "Sync crashed",
                extra={"account_id": account_id, "provider": provider.value},
            )
            raise

        completed = await self._watermarks.complete(
            account_id,
            provider,
            cursor,
            result.records_synced,
            exhausted=result.exhausted,
            run_started_at=run_started_at,
            window_started_at=watermark.window_started_at,
        )
        if not completed:
            result.status = "cancelled"
            result.error = "Sync lease lost to another run"
            return result
        result.status = "completed"
        logger.info(
            "Completed %s sync for account %s: %d records",
            provider.value,
            account_id,
            result.records_synced,
            extra={
                "account_id": account_id,
                "provider": provider.value,
                "pages": result.pages,
                "skipped": result.skipped,
                "exhausted": result.exhausted,
            },
        )
        return result

    async def _check_cancelled(
        self, account_id: str, provider: Provider, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled")
        if await self._credentials.get(account_id, provider) is None:
            raise SyncCancelledError(f"{provider.value} was disconnected")

    async def _fetch_page(
        self,
        connector: BaseConnector,
        credential: Credential,
        cursor: Optional[str],
        since: Optional[datetime],
    ) -> tuple[DealPage, Credential]:
        """Fetch one page with bounded retry; one refresh + one retry on AUTH_EXPIRED."""
        label = f"{credential.provider.value} page fetch"

        async def attempt(cred: Credential) -> Result[DealPage]:
            return await with_retry(
                lambda: connector.fetch_page(cred, cursor, since),
                sleep=self._sleep,
                label=label,
            )

        page = await attempt(credential)
        if isinstance(page, Err) and page.kind is ErrorKind.AUTH_EXPIRED:
            logger.info(
                "Access token rejected, refreshing once",
                extra={"account_id": credential.account_id, "provider": credential.provider.value},
            )
            credential = _unwrap(await self._refresher.refresh(credential))
            page = await attempt(credential)

        return _unwrap(page), credential


def _unwrap(result: Result[Any]) -> Any:
    if isinstance(result, Err):
        raise result.error
    return result.value
