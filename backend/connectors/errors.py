"""
Error taxonomy and typed results for provider calls.

Adapters and the token refresher classify every failure at their boundary
into an :class:`ErrorKind` and hand it back as ``Err(ProviderError)``; no
httpx exception type escapes the ``connectors`` package.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

import httpx

T = TypeVar("T")


class ErrorKind(str, Enum):
    """How a provider failure should be handled by the caller."""

    AUTH_EXPIRED = "auth_expired"          # access token rejected, refresh once then retry once
    NEEDS_RECONNECT = "needs_reconnect"    # refresh token invalid/absent, user must re-authorize
    RATE_LIMITED = "rate_limited"          # 429, retry with backoff
    SCHEMA_MISMATCH = "schema_mismatch"    # single record skipped
    PARTIAL_FAILURE = "partial_failure"    # enrichment call failed, degrade
    TRANSIENT_NETWORK = "transient_network"  # timeout / connection reset / 5xx, retry with backoff
    FATAL = "fatal"                        # config or programming error, abort

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_NETWORK)

    @property
    def user_visible(self) -> bool:
        """Only these kinds should prompt the user to act."""
        return self in (ErrorKind.NEEDS_RECONNECT, ErrorKind.FATAL)


class ProviderError(Exception):
    """A classified failure talking to an external provider."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"ProviderError(kind={self.kind.value!r}, provider={self.provider!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: ProviderError

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Result = Union[Ok[T], Err]


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    """Pull a readable message out of a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] if response.text else ""
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "errorMessage"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, list) and body and isinstance(body[0], dict):
        # Salesforce returns [{"message": ..., "errorCode": ...}]
        return str(body[0].get("message") or body[0].get("errorCode") or "")
    return response.text[:500]


def classify_response(response: httpx.Response, provider: str) -> ProviderError:
    """Map a non-2xx data-endpoint response to a ProviderError."""
    status = response.status_code
    detail = _error_detail(response)
    message = f"{provider} API error ({status}): {detail}".rstrip(": ")

    if status == 401:
        kind = ErrorKind.AUTH_EXPIRED
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.TRANSIENT_NETWORK
    else:
        kind = ErrorKind.FATAL

    return ProviderError(
        kind,
        message,
        provider=provider,
        status_code=status,
        retry_after=_retry_after_seconds(response) if status == 429 else None,
    )


def classify_token_response(response: httpx.Response, provider: str) -> ProviderError:
    """Map a non-2xx token-endpoint response to a ProviderError.

    A 400/401 from a token endpoint means the grant itself is dead.
    """
    status = response.status_code
    detail = _error_detail(response)
    message = f"{provider} token endpoint error ({status}): {detail}".rstrip(": ")

    if status in (400, 401):
        kind = ErrorKind.NEEDS_RECONNECT
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.TRANSIENT_NETWORK
    else:
        kind = ErrorKind.FATAL

    return ProviderError(
        kind,
        message,
        provider=provider,
        status_code=status,
        retry_after=_retry_after_seconds(response) if status == 429 else None,
    )


def classify_transport_error(exc: httpx.HTTPError, provider: str) -> ProviderError:
    """Timeouts and connection failures are transient, never auth problems."""
    return ProviderError(
        ErrorKind.TRANSIENT_NETWORK,
        f"{provider} request failed: {type(exc).__name__}: {exc}",
        provider=provider,
    )
