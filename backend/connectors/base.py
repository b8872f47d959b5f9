"""
Base connector class that all provider adapters inherit from.

Adapters are stateless apart from an optional shared ``httpx.AsyncClient``:
the credential to use is passed into every call, and every call returns a
typed ``Result`` rather than raising provider-specific exceptions.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Optional, Sequence, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from config import settings
from connectors.errors import (
    Err,
    ErrorKind,
    Ok,
    ProviderError,
    Result,
    classify_response,
    classify_transport_error,
)
from connectors.models import Credential, DealPage, RawDeal
from connectors.registry import ConnectorMeta  # noqa: F401 – re-export for convenience

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


class SyncCancelledError(RuntimeError):
    """Raised when a sync should stop because it was cancelled or disconnected."""


class BaseConnector(ABC):
    """Abstract base class for provider data adapters.

    Subclasses set a class-level ``meta`` attribute (:class:`ConnectorMeta`)
    and implement :meth:`fetch_page`.
    """

    # Override in subclasses - must match our provider names
    source_system: str = "unknown"

    meta: ConnectorMeta

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the connector.

        Args:
            client: Shared HTTP client. A short-lived client is opened per
                request when omitted.
            timeout: Per-request timeout in seconds.
        """
        self._client = client
        self.timeout: float = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        """Get authorization headers for the provider API."""
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        async with httpx.AsyncClient() as client:
            return await client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )

    async def _make_request(
        self,
        credential: Credential,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> Result[Any]:
        """Make an authenticated request and classify any failure."""
        try:
            response = await self._send(
                method, url, self._get_headers(credential), params=params, json_data=json_data
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider request failed",
                extra={"provider": self.source_system, "url": url, "error": str(exc)},
            )
            return Err(classify_transport_error(exc, self.source_system))

        if response.status_code >= 400:
            error = classify_response(response, self.source_system)
            logger.info(
                "Provider returned error status",
                extra={
                    "provider": self.source_system,
                    "url": url,
                    "status_code": response.status_code,
                    "kind": error.kind.value,
                },
            )
            return Err(error)

        if response.status_code == 204 or not response.content:
            return Ok({})

        try:
            return Ok(response.json())
        except ValueError:
            return Err(
                ProviderError(
                    ErrorKind.SCHEMA_MISMATCH,
                    f"{self.source_system} returned a non-JSON body from {url}",
                    provider=self.source_system,
                    status_code=response.status_code,
                )
            )

    def _validate(self, model: type[ModelT], payload: Any) -> Optional[ModelT]:
        """Validate one provider record, skipping it on a schema mismatch."""
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            record_id = payload.get("id") or payload.get("Id") if isinstance(payload, dict) else None
            logger.warning(
                "Skipping %s record with unexpected shape",
                self.source_system,
                extra={
                    "provider": self.source_system,
                    "kind": ErrorKind.SCHEMA_MISMATCH.value,
                    "record_id": record_id,
                    "errors": exc.errors(include_url=False)[:3],
                },
            )
            return None

    def _validate_all(
        self, model: type[ModelT], payloads: Sequence[Any]
    ) -> tuple[list[ModelT], int]:
        """Validate a batch; returns the valid records and the skipped count."""
        valid: list[ModelT] = []
        skipped = 0
        for payload in payloads:
            record = self._validate(model, payload)
            if record is None:
                skipped += 1
            else:
                valid.append(record)
        return valid, skipped

    async def _fan_out(
        self, calls: Sequence[Awaitable[T]], stage: str
    ) -> list[Optional[T]]:
        """Run secondary calls concurrently; one failure never sinks its siblings.

        Failed calls come back as ``None`` and are logged as partial failures.
        """
        semaphore = asyncio.Semaphore(settings.PROVIDER_CONTACT_CONCURRENCY)

        async def _bounded(call: Awaitable[T]) -> T:
            async with semaphore:
                return await call

        outcomes = await asyncio.gather(*(_bounded(c) for c in calls), return_exceptions=True)

        results: list[Optional[T]] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(
                    "Enrichment call failed, continuing without it",
                    extra={
                        "provider": self.source_system,
                        "kind": ErrorKind.PARTIAL_FAILURE.value,
                        "stage": stage,
                        "error": str(outcome),
                    },
                )
                results.append(None)
            else:
                results.append(outcome)
        return results

    def _log_partial(self, stage: str, error: ProviderError) -> None:
        logger.warning(
            "Enrichment call failed, continuing without it",
            extra={
                "provider": self.source_system,
                "kind": ErrorKind.PARTIAL_FAILURE.value,
                "stage": stage,
                "error": error.message,
            },
        )

    @abstractmethod
    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        """Fetch one page of raw deals starting at ``cursor`` (None = first page)."""

    async def fetch_deals(
        self, credential: Credential, since: Optional[datetime] = None
    ) -> AsyncIterator[RawDeal]:
        """Lazily yield every raw deal, page by page.

        Each call starts again from the first page. Raises
        :class:`ProviderError` when a page cannot be fetched.
        """
        cursor: Optional[str] = None
        while True:
            result = await self.fetch_page(credential, cursor, since)
            if isinstance(result, Err):
                raise result.error
            for item in result.value.items:
                yield item
            cursor = result.value.next_cursor
            if not cursor:
                return
