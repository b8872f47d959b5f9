"""
Bounded retry for provider calls that return a ``Result``.

Only RATE_LIMITED and TRANSIENT_NETWORK are retried; everything else is
handed straight back to the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from config import settings
from connectors.errors import Err, ErrorKind, ProviderError, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_NETWORK}
)

Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay(
    attempt: int,
    error: ProviderError,
    base_delay: float,
    max_delay: float,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    if error.kind is ErrorKind.RATE_LIMITED and error.retry_after is not None:
        return max(0.0, min(error.retry_after, max_delay))
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def with_retry(
    operation: Callable[[], Awaitable[Result[T]]],
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    retry_on: frozenset[ErrorKind] = RETRYABLE_KINDS,
    sleep: Sleep = asyncio.sleep,
    label: str = "provider call",
) -> Result[T]:
    """Run ``operation`` until it succeeds, fails with a non-retryable kind,
    or ``max_attempts`` is used up; returns the last result."""
    attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
    base = settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
    cap = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay

    attempt = 1
    while True:
        result = await operation()
        if not isinstance(result, Err) or result.kind not in retry_on:
            return result
        if attempt >= attempts:
            logger.warning(
                "Giving up on %s after %d attempts",
                label,
                attempt,
                extra={"kind": result.kind.value, "error": result.error.message},
            )
            return result

        delay = backoff_delay(attempt, result.error, base, cap)
        logger.info(
            "Retrying %s in %.1fs (attempt %d/%d)",
            label,
            delay,
            attempt + 1,
            attempts,
            extra={"kind": result.kind.value},
        )
        await sleep(delay)
        attempt += 1
