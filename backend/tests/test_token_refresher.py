import asyncio
from datetime import datetime, timedelta
from typing import Optional

from connectors.errors import Err, ErrorKind, Ok, ProviderError
from connectors.models import Credential, Provider
from services.token_refresher import TokenRefresher

NOW = datetime(2024, 3, 1, 12, 0, 0)


class FakeCredentialStore:
    def __init__(self, *credentials: Credential) -> None:
        self.rows: dict[tuple[str, str], Credential] = {
            (c.account_id, c.provider.value): c for c in credentials
        }
        self.upserts: list[Credential] = []

    async def get(self, account_id: str, provider) -> Optional[Credential]:
        return self.rows.get((account_id, Provider(provider).value))

    async def upsert(self, account_id: str, provider, credential: Credential) -> None:
        self.upserts.append(credential)
        self.rows[(account_id, Provider(provider).value)] = credential


class FakeOAuth:
    def __init__(self, results=None) -> None:
        self.calls: list[Credential] = []
        self._results = list(results or [])

    async def refresh(self, credential: Credential):
        self.calls.append(credential)
        # Give concurrent callers a chance to pile up on the lock
        await asyncio.sleep(0.01)
        if self._results:
            return self._results.pop(0)
        return Ok(
            credential.model_copy(
                update={
                    "access_token": f"new-{len(self.calls)}",
                    "refresh_token": f"refresh-{len(self.calls) + 1}",
                    "expires_at": NOW + timedelta(hours=1),
                }
            )
        )


def _credential(**overrides) -> Credential:
    fields = {
        "account_id": "acct-1",
        "provider": Provider.HUBSPOT,
        "access_token": "old",
        "refresh_token": "refresh-1",
        "expires_at": NOW - timedelta(minutes=1),
    }
    fields.update(overrides)
    return Credential(**fields)


def _refresher(store, oauth, buffer_seconds: int = 300) -> TokenRefresher:
    return TokenRefresher(store, oauth=oauth, clock=lambda: NOW, buffer_seconds=buffer_seconds)


def test_refresh_persists_rotated_refresh_token() -> None:
    credential = _credential()
    store = FakeCredentialStore(credential)
    oauth = FakeOAuth()

    result = asyncio.run(_refresher(store, oauth).refresh(credential))

    assert isinstance(result, Ok)
    assert result.value.access_token == "new-1"
    assert store.rows[("acct-1", "hubspot")].refresh_token == "refresh-2"
    assert len(store.upserts) == 1


def test_concurrent_refreshes_hit_the_token_endpoint_once() -> None:
    credential = _credential()
    store = FakeCredentialStore(credential)
    oauth = FakeOAuth()
    refresher = _refresher(store, oauth)

    async def _run():
        return await asyncio.gather(*(refresher.refresh(credential) for _ in range(3)))

    results = asyncio.run(_run())

    assert len(oauth.calls) == 1
    assert {r.value.access_token for r in results} == {"new-1"}
    assert len(store.upserts) == 1


def test_missing_refresh_token_needs_reconnect() -> None:
    credential = _credential(refresh_token=None)
    oauth = FakeOAuth()

    result = asyncio.run(_refresher(FakeCredentialStore(credential), oauth).refresh(credential))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NEEDS_RECONNECT
    assert oauth.calls == []


def test_api_key_providers_are_never_refreshed() -> None:
    credential = _credential(provider=Provider.FOLK, refresh_token="unused", expires_at=None)
    oauth = FakeOAuth()

    result = asyncio.run(_refresher(FakeCredentialStore(credential), oauth).refresh(credential))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NEEDS_RECONNECT
    assert oauth.calls == []


def test_disconnected_credential_needs_reconnect() -> None:
    credential = _credential()
    oauth = FakeOAuth()

    result = asyncio.run(_refresher(FakeCredentialStore(), oauth).refresh(credential))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NEEDS_RECONNECT
    assert oauth.calls == []


def test_transient_failure_is_returned_and_nothing_is_stored() -> None:
    credential = _credential()
    store = FakeCredentialStore(credential)
    failure = Err(ProviderError(ErrorKind.TRANSIENT_NETWORK, "timeout", provider="hubspot"))
    oauth = FakeOAuth(results=[failure])

    result = asyncio.run(_refresher(store, oauth).refresh(credential))

    assert result == failure
    assert store.upserts == []
    assert store.rows[("acct-1", "hubspot")].access_token == "old"


def test_ensure_fresh_only_refreshes_inside_buffer() -> None:
    fresh = _credential(expires_at=NOW + timedelta(hours=1))
    expiring = _credential(expires_at=NOW + timedelta(minutes=2))
    no_expiry = _credential(expires_at=None)
    oauth = FakeOAuth()
    refresher = _refresher(FakeCredentialStore(expiring), oauth, buffer_seconds=300)

    assert asyncio.run(refresher.ensure_fresh(fresh)) == Ok(fresh)
    assert asyncio.run(refresher.ensure_fresh(no_expiry)) == Ok(no_expiry)
    assert oauth.calls == []

    result = asyncio.run(refresher.ensure_fresh(expiring))

    assert isinstance(result, Ok)
    assert result.value.access_token == "new-1"
    assert len(oauth.calls) == 1
