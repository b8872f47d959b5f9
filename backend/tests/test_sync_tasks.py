import asyncio

from connectors.models import Provider
from services import credentials, integrations
from services.sync_orchestrator import SyncAlreadyRunningError, SyncRunResult
from workers.tasks import sync as sync_tasks

ACCOUNT = "11111111-1111-1111-1111-111111111111"


class FakeOrchestrator:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.runs: list[tuple[str, Provider]] = []

    async def run(self, account_id, provider, cancel_event=None):
        self.runs.append((account_id, provider))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_celery_sync_returns_cancelled_when_connection_is_removed() -> None:
    orchestrator = FakeOrchestrator(
        SyncRunResult(
            account_id=ACCOUNT,
            provider="hubspot",
            status="cancelled",
            records_synced=40,
            error="hubspot was disconnected during sync",
        )
    )

    result = asyncio.run(sync_tasks._sync_integration(ACCOUNT, "hubspot", orchestrator))

    assert result["status"] == "cancelled"
    assert result["provider"] == "hubspot"
    assert result["records_synced"] == 40
    assert result["error_kind"] is None
    assert "disconnected during sync" in result["error"]
    assert orchestrator.runs == [(ACCOUNT, Provider.HUBSPOT)]


def test_celery_sync_skips_when_a_run_holds_the_lease() -> None:
    orchestrator = FakeOrchestrator(SyncAlreadyRunningError("A gmail sync is already running"))

    result = asyncio.run(sync_tasks._sync_integration(ACCOUNT, "gmail", orchestrator))

    assert result["status"] == "skipped"
    assert "already running" in result["error"]


def test_celery_sync_fails_fast_for_unknown_provider() -> None:
    orchestrator = FakeOrchestrator(AssertionError("should not run"))

    result = asyncio.run(sync_tasks._sync_integration(ACCOUNT, "myspace", orchestrator))

    assert result["status"] == "failed"
    assert result["error_kind"] == "fatal"
    assert orchestrator.runs == []


def test_sync_all_tallies_outcomes_per_account(monkeypatch) -> None:
    outcomes = {
        ("a1", "hubspot"): "completed",
        ("a1", "gmail"): "failed",
        ("a2", "folk"): "skipped",
    }

    async def _fake_sync(account_id, provider, orchestrator=None):
        return {"account_id": account_id, "provider": provider, "status": outcomes[(account_id, provider)]}

    monkeypatch.setattr(sync_tasks, "_sync_integration", _fake_sync)

    summary = asyncio.run(sync_tasks._sync_all(list(outcomes)))

    assert summary["total_accounts"] == 2
    assert summary["total_connections_synced"] == 1
    assert summary["total_connections_failed"] == 1
    assert summary["results"]["a1"]["gmail"]["status"] == "failed"
    assert summary["results"]["a2"]["folk"]["status"] == "skipped"


def test_scheduled_sync_only_includes_data_providers(monkeypatch) -> None:
    class FakeCredentialStore:
        async def list_connections(self):
            return [("a1", "hubspot"), ("a1", "slack"), ("a2", "zoho")]

    monkeypatch.setattr(credentials, "CredentialStore", FakeCredentialStore)

    connections = asyncio.run(sync_tasks._get_all_connections())

    assert connections == [("a1", "hubspot"), ("a2", "zoho")]


def test_celery_sync_reports_unexpected_errors_as_failed() -> None:
    orchestrator = FakeOrchestrator(RuntimeError("deadlock detected"))

    result = asyncio.run(sync_tasks._sync_integration(ACCOUNT, "pipedrive", orchestrator))

    assert result["status"] == "failed"
    assert result["error_kind"] == "fatal"
    assert result["error"] == "deadlock detected"


def test_sync_all_continues_after_a_crashed_connection(monkeypatch) -> None:
    calls: list[tuple[str, str]] = []

    async def _run_sync(account_id, provider, orchestrator=None):
        calls.append((account_id, provider))
        if account_id == "acct-1":
            raise RuntimeError("deadlock detected")
        return SyncRunResult(account_id=account_id, provider=provider, status="completed", exhausted=True)

    monkeypatch.setattr(integrations, "run_sync", _run_sync)

    summary = asyncio.run(sync_tasks._sync_all([("acct-1", "hubspot"), ("acct-2", "pipedrive")]))

    assert calls == [("acct-1", "hubspot"), ("acct-2", "pipedrive")]
    assert summary["total_connections_failed"] == 1
    assert summary["total_connections_synced"] == 1
    assert summary["results"]["acct-1"]["hubspot"]["error_kind"] == "fatal"
