import asyncio

from connectors.errors import Err, ErrorKind, Ok, ProviderError
from services.retry import backoff_delay, with_retry


def _err(kind: ErrorKind, retry_after=None) -> Err:
    return Err(ProviderError(kind, kind.value, provider="hubspot", retry_after=retry_after))


def _run(results, **kwargs):
    remaining = list(results)
    calls = 0
    delays: list[float] = []

    async def operation():
        nonlocal calls
        calls += 1
        return remaining.pop(0)

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    result = asyncio.run(with_retry(operation, sleep=fake_sleep, **kwargs))
    return result, calls, delays


def test_transient_errors_are_retried_with_exponential_backoff() -> None:
    results = [_err(ErrorKind.TRANSIENT_NETWORK), _err(ErrorKind.TRANSIENT_NETWORK), Ok("page")]

    result, calls, delays = _run(results, max_attempts=4, base_delay=1.0, max_delay=30.0)

    assert result == Ok("page")
    assert calls == 3
    assert delays == [1.0, 2.0]


def test_rate_limit_honors_retry_after_up_to_the_cap() -> None:
    results = [_err(ErrorKind.RATE_LIMITED, retry_after=12), _err(ErrorKind.RATE_LIMITED, retry_after=90), Ok(1)]

    result, calls, delays = _run(results, max_attempts=4, base_delay=1.0, max_delay=30.0)

    assert result == Ok(1)
    assert delays == [12.0, 30.0]


def test_non_retryable_errors_return_immediately() -> None:
    for kind in (ErrorKind.AUTH_EXPIRED, ErrorKind.NEEDS_RECONNECT, ErrorKind.FATAL, ErrorKind.SCHEMA_MISMATCH):
        failure = _err(kind)

        result, calls, delays = _run([failure, Ok("unused")])

        assert result is failure
        assert calls == 1
        assert delays == []


def test_gives_up_after_max_attempts() -> None:
    results = [_err(ErrorKind.TRANSIENT_NETWORK) for _ in range(5)]

    result, calls, delays = _run(results, max_attempts=3, base_delay=0.5, max_delay=30.0)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.TRANSIENT_NETWORK
    assert calls == 3
    assert delays == [0.5, 1.0]


def test_backoff_delay_is_capped() -> None:
    error = ProviderError(ErrorKind.TRANSIENT_NETWORK, "x")

    assert backoff_delay(1, error, 1.0, 10.0) == 1.0
    assert backoff_delay(4, error, 1.0, 10.0) == 8.0
    assert backoff_delay(6, error, 1.0, 10.0) == 10.0
