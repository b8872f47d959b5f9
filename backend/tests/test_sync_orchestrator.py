import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from config import settings
from connectors.base import BaseConnector, SyncCancelledError
from connectors.errors import Err, ErrorKind, Ok, ProviderError
from connectors.models import Credential, DealPage, HubSpotDeal, PipedriveDeal, Provider
from services.sync_orchestrator import (
    CredentialNotFoundError,
    DealSink,
    SyncAlreadyRunningError,
    SyncOrchestrator,
)

ACCOUNT = "acct-1"


@dataclass
class FakeWatermark:
    cursor: Optional[str] = None
    started_at: Optional[datetime] = None
    window_started_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None


class FakeWatermarkStore:
    """Keeps the row in memory with the same window and lease rules as WatermarkStore."""

    def __init__(
        self,
        watermark: Optional[FakeWatermark] = None,
        held: bool = False,
        clock: Optional[list[datetime]] = None,
    ) -> None:
        self.watermark = watermark or FakeWatermark()
        self.held = held
        self.lease_lost = False
        self.saved_cursors: list[Optional[str]] = []
        self.completed: list[dict[str, Any]] = []
        self.failed: list[Any] = []
        self._clock = list(clock or [])

    async def try_acquire(self, account_id, provider):
        if self.held:
            return None
        self.held = True
        now = self._clock.pop(0) if self._clock else datetime.utcnow()
        if self.watermark.cursor is None:
            self.watermark.window_started_at = now
        self.watermark.started_at = now
        return self.watermark

    async def save_cursor(self, account_id, provider, cursor, records_synced, run_started_at):
        if self.lease_lost:
            raise SyncCancelledError("Sync lease lost to another run")
        assert run_started_at == self.watermark.started_at
        self.saved_cursors.append(cursor)
        self.watermark.cursor = cursor

    async def complete(
        self, account_id, provider, cursor, records_synced, exhausted, run_started_at, window_started_at=None
    ):
        if self.lease_lost:
            return False
        self.held = False
        self.completed.append({"cursor": cursor, "records_synced": records_synced, "exhausted": exhausted})
        self.watermark.cursor = None if exhausted else cursor
        if exhausted:
            self.watermark.last_completed_at = window_started_at or run_started_at
        return True

    async def fail(self, account_id, provider, error, records_synced, run_started_at):
        self.failed.append(error)
        if self.lease_lost:
            return False
        self.held = False
        return True


class FakeCredentialStore:
    def __init__(self, credential: Optional[Credential]) -> None:
        self.credential = credential

    async def get(self, account_id, provider):
        return self.credential


class FakeRefresher:
    def __init__(self, refresh_result=None) -> None:
        self.refresh_calls = 0
        self._refresh_result = refresh_result

    async def ensure_fresh(self, credential):
        return Ok(credential)

    async def refresh(self, credential):
        self.refresh_calls += 1
        if self._refresh_result is not None:
            return self._refresh_result
        return Ok(credential.model_copy(update={"access_token": "refreshed"}))


class FakeConnector(BaseConnector):
    """Serves pages keyed by cursor; a list value is consumed one result per call."""

    source_system = "hubspot"

    def __init__(self, pages: dict[Optional[str], Any]) -> None:
        super().__init__()
        self.pages = pages
        self.calls: list[tuple[Optional[str], Optional[datetime], str]] = []

    async def fetch_page(self, credential, cursor=None, since=None):
        self.calls.append((cursor, since, credential.access_token))
        # Yield so concurrent runs interleave
        await asyncio.sleep(0)
        result = self.pages[cursor]
        if isinstance(result, list):
            return result.pop(0)
        return result


class RecordingSink:
    def __init__(self, watermarks: Optional[FakeWatermarkStore] = None) -> None:
        self.batches: list[list[Any]] = []
        self.cursor_at_call: list[Optional[str]] = []
        self._watermarks = watermarks

    async def __call__(self, account_id, provider, records):
        self.batches.append(list(records))
        if self._watermarks is not None:
            self.cursor_at_call.append(self._watermarks.saved_cursors[-1])
        return len(records)


def _credential(provider: Provider = Provider.HUBSPOT) -> Credential:
    return Credential(account_id=ACCOUNT, provider=provider, access_token="tok", refresh_token="r")


def _page(items, next_cursor=None, skipped=0) -> Ok:
    return Ok(DealPage(items=items, next_cursor=next_cursor, skipped=skipped))


def _orchestrator(connector, watermarks=None, credentials=None, refresher=None, sink=None, **kwargs):
    watermarks = watermarks or FakeWatermarkStore()
    sink = sink or RecordingSink(watermarks)

    async def _no_sleep(delay: float) -> None:
        return None

    orchestrator = SyncOrchestrator(
        credentials=credentials or FakeCredentialStore(_credential()),
        refresher=refresher or FakeRefresher(),
        watermarks=watermarks,
        connector_factory=lambda provider: connector,
        sinks={Provider.HUBSPOT: sink, Provider.GMAIL: sink},
        sleep=_no_sleep,
        **kwargs,
    )
    return orchestrator, watermarks, sink


def test_run_pages_until_exhausted() -> None:
    connector = FakeConnector(
        {
            None: _page(["a", "b"], "p2"),
            "p2": _page(["c"], "p3", skipped=1),
            "p3": _page(["d"]),
        }
    )
    orchestrator, watermarks, sink = _orchestrator(connector)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "completed"
    assert result.exhausted
    assert result.records_synced == 4
    assert result.pages == 3
    assert result.skipped == 1
    assert watermarks.saved_cursors == ["p2", "p3", None]
    assert watermarks.completed == [{"cursor": None, "records_synced": 4, "exhausted": True}]
    assert sink.batches == [["a", "b"], ["c"], ["d"]]


def test_cursor_is_saved_before_records_are_processed() -> None:
    connector = FakeConnector({None: _page(["a"], "p2"), "p2": _page(["b"])})
    orchestrator, watermarks, sink = _orchestrator(connector)

    asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert sink.cursor_at_call == ["p2", None]


def test_run_resumes_from_stored_cursor() -> None:
    connector = FakeConnector({"p2": _page(["b"])})
    watermarks = FakeWatermarkStore(FakeWatermark(cursor="p2"))
    orchestrator, _, _ = _orchestrator(connector, watermarks=watermarks)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "completed"
    assert [call[0] for call in connector.calls] == ["p2"]


def test_record_cap_stops_early_and_keeps_cursor() -> None:
    connector = FakeConnector({None: _page(["a", "b"], "p2"), "p2": _page(["c"])})
    orchestrator, watermarks, _ = _orchestrator(connector, max_records=2)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "completed"
    assert not result.exhausted
    assert result.records_synced == 2
    assert watermarks.completed == [{"cursor": "p2", "records_synced": 2, "exhausted": False}]
    assert len(connector.calls) == 1


def test_held_lease_raises_without_fetching() -> None:
    connector = FakeConnector({})
    orchestrator, _, _ = _orchestrator(connector, watermarks=FakeWatermarkStore(held=True))

    with pytest.raises(SyncAlreadyRunningError):
        asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))
    assert connector.calls == []


def test_concurrent_runs_for_same_key_only_one_proceeds() -> None:
    connector = FakeConnector({None: _page(["a"])})
    orchestrator, watermarks, _ = _orchestrator(connector)

    async def _run():
        return await asyncio.gather(
            orchestrator.run(ACCOUNT, "hubspot"),
            orchestrator.run(ACCOUNT, "hubspot"),
            return_exceptions=True,
        )

    outcomes = asyncio.run(_run())

    assert sum(isinstance(o, SyncAlreadyRunningError) for o in outcomes) == 1
    assert sum(getattr(o, "status", None) == "completed" for o in outcomes) == 1


def test_missing_credential_raises() -> None:
    orchestrator, watermarks, _ = _orchestrator(
        FakeConnector({}), credentials=FakeCredentialStore(None)
    )

    with pytest.raises(CredentialNotFoundError):
        asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))
    assert not watermarks.held


def test_unknown_provider_raises_value_error() -> None:
    orchestrator, _, _ = _orchestrator(FakeConnector({}))

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.run(ACCOUNT, "not-a-provider"))


def test_auth_expired_refreshes_once_then_retries() -> None:
    expired = Err(ProviderError(ErrorKind.AUTH_EXPIRED, "401", provider="hubspot", status_code=401))
    connector = FakeConnector({None: [expired, _page(["a"])]})
    refresher = FakeRefresher()
    orchestrator, _, _ = _orchestrator(connector, refresher=refresher)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "completed"
    assert refresher.refresh_calls == 1
    assert [call[2] for call in connector.calls] == ["tok", "refreshed"]


def test_second_auth_failure_fails_the_run() -> None:
    expired = Err(ProviderError(ErrorKind.AUTH_EXPIRED, "401", provider="hubspot", status_code=401))
    connector = FakeConnector({None: [expired, expired]})
    refresher = FakeRefresher()
    orchestrator, watermarks, _ = _orchestrator(connector, refresher=refresher)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "failed"
    assert result.error_kind == ErrorKind.AUTH_EXPIRED.value
    assert refresher.refresh_calls == 1
    assert len(watermarks.failed) == 1


def test_dead_refresh_token_marks_needs_reconnect() -> None:
    expired = Err(ProviderError(ErrorKind.AUTH_EXPIRED, "401", provider="hubspot", status_code=401))
    dead = Err(ProviderError(ErrorKind.NEEDS_RECONNECT, "invalid_grant", provider="hubspot"))
    connector = FakeConnector({None: [expired]})
    orchestrator, watermarks, _ = _orchestrator(connector, refresher=FakeRefresher(dead))

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "failed"
    assert result.needs_reconnect
    assert result.to_dict()["needs_reconnect"] is True
    assert watermarks.failed[0].kind is ErrorKind.NEEDS_RECONNECT


def test_transient_errors_are_retried_within_the_run() -> None:
    flaky = Err(ProviderError(ErrorKind.TRANSIENT_NETWORK, "reset", provider="hubspot"))
    connector = FakeConnector({None: [flaky, flaky, _page(["a"])]})
    orchestrator, _, _ = _orchestrator(connector)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "completed"
    assert len(connector.calls) == 3


def test_failure_keeps_records_already_processed() -> None:
    fatal = Err(ProviderError(ErrorKind.FATAL, "403", provider="hubspot", status_code=403))
    connector = FakeConnector({None: _page(["a"], "p2"), "p2": fatal})
    orchestrator, watermarks, _ = _orchestrator(connector)

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "failed"
    assert result.records_synced == 1
    assert result.error_kind == "fatal"
    assert watermarks.saved_cursors == ["p2"]
    assert watermarks.completed == []


def test_cancel_event_stops_before_next_page() -> None:
    connector = FakeConnector({None: _page(["a"], "p2"), "p2": _page(["b"])})
    cancel = asyncio.Event()
    watermarks = FakeWatermarkStore()

    class CancellingSink(RecordingSink):
        async def __call__(self, account_id, provider, records):
            cancel.set()
            return await super().__call__(account_id, provider, records)

    orchestrator, _, _ = _orchestrator(connector, watermarks=watermarks, sink=CancellingSink())

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot", cancel_event=cancel))

    assert result.status == "cancelled"
    assert result.records_synced == 1
    assert result.error_kind is None
    assert len(connector.calls) == 1
    assert len(watermarks.failed) == 1


def test_disconnect_mid_run_cancels() -> None:
    credentials = FakeCredentialStore(_credential())
    connector = FakeConnector({None: _page(["a"], "p2"), "p2": _page(["b"])})

    class DisconnectingSink(RecordingSink):
        async def __call__(self, account_id, provider, records):
            credentials.credential = None
            return await super().__call__(account_id, provider, records)

    orchestrator, _, _ = _orchestrator(connector, credentials=credentials, sink=DisconnectingSink())

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "cancelled"
    assert "disconnected" in result.error


def test_unexpected_errors_are_recorded_and_raised() -> None:
    connector = FakeConnector({None: _page(["a"])})

    class BrokenSink(RecordingSink):
        async def __call__(self, account_id, provider, records):
            raise RuntimeError("database is down")

    orchestrator, watermarks, _ = _orchestrator(connector, sink=BrokenSink())

    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))
    assert len(watermarks.failed) == 1
    assert not watermarks.held


def test_only_gmail_runs_are_windowed() -> None:
    last = datetime(2024, 3, 1, 12, 0, 0)
    gmail = FakeConnector({None: _page([])})
    crm = FakeConnector({None: _page([])})
    gmail_orchestrator, _, _ = _orchestrator(
        gmail,
        watermarks=FakeWatermarkStore(FakeWatermark(last_completed_at=last)),
        credentials=FakeCredentialStore(_credential(Provider.GMAIL)),
    )
    crm_orchestrator, _, _ = _orchestrator(
        crm, watermarks=FakeWatermarkStore(FakeWatermark(last_completed_at=last))
    )

    asyncio.run(gmail_orchestrator.run(ACCOUNT, "gmail"))
    asyncio.run(crm_orchestrator.run(ACCOUNT, "hubspot"))

    assert gmail.calls[0][1] == last - timedelta(minutes=settings.SYNC_OVERLAP_MINUTES)
    assert crm.calls[0][1] is None


def test_first_gmail_run_uses_initial_window() -> None:
    gmail = FakeConnector({None: _page([])})
    orchestrator, _, _ = _orchestrator(
        gmail, credentials=FakeCredentialStore(_credential(Provider.GMAIL))
    )

    asyncio.run(orchestrator.run(ACCOUNT, "gmail"))

    since = gmail.calls[0][1]
    expected = datetime.utcnow() - timedelta(days=settings.SYNC_INITIAL_WINDOW_DAYS)
    assert abs((since - expected).total_seconds()) < 60


def test_resumed_gmail_run_keeps_the_window_of_the_run_that_started_it() -> None:
    previous = datetime(2026, 10, 1, 11, 0, 0)
    first_start = datetime(2026, 10, 1, 12, 0, 0)
    resume_start = first_start + timedelta(hours=1)
    next_start = first_start + timedelta(hours=2)
    gmail = FakeConnector(
        {
            None: [_page(["m1"], "p2"), _page([])],
            "p2": _page(["m2"]),
        }
    )
    watermarks = FakeWatermarkStore(
        FakeWatermark(last_completed_at=previous), clock=[first_start, resume_start, next_start]
    )
    orchestrator, _, _ = _orchestrator(
        gmail,
        watermarks=watermarks,
        credentials=FakeCredentialStore(_credential(Provider.GMAIL)),
        max_records=1,
    )

    capped = asyncio.run(orchestrator.run(ACCOUNT, "gmail"))
    resumed = asyncio.run(orchestrator.run(ACCOUNT, "gmail"))
    asyncio.run(orchestrator.run(ACCOUNT, "gmail"))

    assert not capped.exhausted
    assert resumed.exhausted
    # Mail that arrived while the capped run's cursor was pending is covered by the next window
    assert watermarks.watermark.last_completed_at == first_start
    assert gmail.calls[-1][0] is None
    assert gmail.calls[-1][1] == first_start - timedelta(minutes=settings.SYNC_OVERLAP_MINUTES)


def test_lost_lease_stops_the_run_as_cancelled() -> None:
    connector = FakeConnector({None: _page(["a"], "p2"), "p2": _page(["b"])})
    orchestrator, watermarks, sink = _orchestrator(connector)
    watermarks.lease_lost = True

    result = asyncio.run(orchestrator.run(ACCOUNT, "hubspot"))

    assert result.status == "cancelled"
    assert "lease lost" in result.error
    assert sink.batches == []
    assert watermarks.completed == []


class FakeDealRepository:
    def __init__(self) -> None:
        self.upserted: list[Any] = []

    async def upsert_deals(self, account_id, deals):
        self.upserted.extend(deals)
        return len(deals)


def test_deal_sink_skips_records_from_another_provider() -> None:
    repository = FakeDealRepository()
    sink = DealSink(repository)

    stored = asyncio.run(
        sink(ACCOUNT, Provider.HUBSPOT, [HubSpotDeal(id="1", dealname="Ok"), PipedriveDeal(id=2)])
    )

    assert stored == 1
    assert [d.external_id for d in repository.upserted] == ["1"]
