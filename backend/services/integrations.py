"""
Caller-facing operations for provider connections, syncs and deals.

Routes and Celery tasks go through these functions rather than the stores
directly.  Collaborators default to the database-backed implementations and
can be swapped in tests.
"""

from datetime import datetime
import logging
from typing import Any, Iterable, Optional

from connectors.errors import Err, ErrorKind, ProviderError
from connectors.folk import FolkConnector
from connectors.models import CanonicalDeal, Credential, Provider
from connectors.registry import AuthType, get_connector_class
from models.sync_watermark import SyncWatermark
from services.credentials import CredentialStore
from services.deal_analysis import analysis_lists, analyze_deal
from services.deals import DealRepository, to_canonical
from services.deduplication import dedupe as _dedupe
from services.oauth import OAuthClient
from services.sync_orchestrator import SyncOrchestrator, SyncRunResult
from services.sync_watermarks import WatermarkStore
from services.text_completion import TextCompletion, get_text_completion

logger = logging.getLogger(__name__)


class IntegrationError(ValueError):
    """A request the caller can fix (bad provider, bad API key, ...)."""


def _parse_provider(provider: Provider | str) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise IntegrationError(f"Unknown provider: {provider}") from None


def build_authorization_url(
    account_id: str, provider: Provider | str, oauth: Optional[OAuthClient] = None
) -> str:
    """Where to send the user to start connecting ``provider``."""
    provider = _parse_provider(provider)
    oauth = oauth or OAuthClient()
    try:
        return oauth.build_authorization_url(account_id, provider)
    except ValueError as exc:
        raise IntegrationError(str(exc)) from exc


async def connect_provider(
    account_id: str,
    provider: Provider | str,
    auth_code: str,
    oauth: Optional[OAuthClient] = None,
    store: Optional[CredentialStore] = None,
) -> Credential:
    """Exchange an OAuth authorization code and store the resulting credential.

    Raises:
        IntegrationError: unknown or non-OAuth provider.
        ProviderError: the token exchange failed.
    """
    provider = _parse_provider(provider)
    oauth = oauth or OAuthClient()
    store = store or CredentialStore()
    try:
        result = await oauth.exchange_code(account_id, provider, auth_code)
    except ValueError as exc:
        raise IntegrationError(str(exc)) from exc
    if isinstance(result, Err):
        raise result.error

    credential = result.value
    await store.upsert(account_id, provider, credential)
    logger.info(
        "Connected %s for account %s",
        provider.value,
        account_id,
        extra={"account_id": account_id, "provider": provider.value},
    )
    return credential


async def connect_api_key(
    account_id: str,
    provider: Provider | str,
    api_key: str,
    email: Optional[str] = None,
    connector: Optional[FolkConnector] = None,
    store: Optional[CredentialStore] = None,
) -> Credential:
    """Verify and store an API key for a key-authenticated provider (Folk)."""
    provider = _parse_provider(provider)
    api_key = api_key.strip()
    if not api_key:
        raise IntegrationError("API key is required")
    try:
        meta = get_connector_class(provider.value).meta
    except ValueError as exc:
        raise IntegrationError(str(exc)) from exc
    if meta.auth_type is not AuthType.API_KEY:
        raise IntegrationError(f"{provider.value} does not use API keys")

    connector = connector or FolkConnector()
    store = store or CredentialStore()
    credential = Credential(account_id=account_id, provider=provider, access_token=api_key)

    result = await connector.verify(credential)
    if isinstance(result, Err):
        if result.error.status_code in (401, 403):
            raise IntegrationError(
                f"Invalid API key. Please check your {meta.name} API key and try again."
            )
        raise result.error

    user: dict[str, Any] = result.value or {}
    user_email: Optional[str] = user.get("email")
    if email and user_email and user_email.lower() != email.strip().lower():
        raise IntegrationError(f"Email does not match your {meta.name} account.")

    credential = credential.model_copy(
        update={"provider_metadata": {"email": user_email or email, "name": user.get("fullName")}}
    )
    await store.upsert(account_id, provider, credential)
    logger.info(
        "Connected %s with API key for account %s",
        provider.value,
        account_id,
        extra={"account_id": account_id, "provider": provider.value},
    )
    return credential


async def disconnect_provider(
    account_id: str, provider: Provider | str, store: Optional[CredentialStore] = None
) -> bool:
    """Remove the stored credential; a running sync stops at its next page."""
    provider = _parse_provider(provider)
    store = store or CredentialStore()
    return await store.delete(account_id, provider)


async def get_connection_status(
    account_id: str,
    provider: Provider | str,
    store: Optional[CredentialStore] = None,
    watermarks: Optional[WatermarkStore] = None,
) -> dict[str, Any]:
    provider = _parse_provider(provider)
    store = store or CredentialStore()
    watermarks = watermarks or WatermarkStore()

    credential = await store.get(account_id, provider)
    watermark = await watermarks.get(account_id, provider)
    sync = watermark.to_dict() if watermark else None

    if credential is None:
        return {"provider": provider.value, "connected": False, "needs_reconnect": False, "sync": sync}

    return {
        "provider": provider.value,
        "connected": True,
        "email": credential.provider_metadata.get("email"),
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        "token_expired": credential.is_expired(datetime.utcnow()),
        "scope": list(credential.scope),
        "needs_reconnect": bool(sync and sync["needs_reconnect"]),
        "sync": sync,
    }


async def run_sync(
    account_id: str,
    provider: Provider | str,
    orchestrator: Optional[SyncOrchestrator] = None,
) -> SyncRunResult:
    """Run one sync and return its outcome; see :meth:`SyncOrchestrator.run`."""
    provider = _parse_provider(provider)
    orchestrator = orchestrator or SyncOrchestrator()
    try:
        return await orchestrator.run(account_id, provider)
    except ValueError as exc:
        raise IntegrationError(str(exc)) from exc


async def sync_provider(
    account_id: str,
    provider: Provider | str,
    orchestrator: Optional[SyncOrchestrator] = None,
    watermarks: Optional[WatermarkStore] = None,
) -> SyncWatermark:
    """Run one sync and return the resulting watermark row."""
    watermarks = watermarks or WatermarkStore()
    result = await run_sync(account_id, provider, orchestrator)
    watermark = await watermarks.get(account_id, result.provider)
    if watermark is None:
        raise ProviderError(
            ErrorKind.FATAL,
            f"Sync watermark missing after run for {result.provider}",
            provider=result.provider,
        )
    return watermark


async def list_canonical_deals(
    account_id: str,
    provider: Optional[Provider | str] = None,
    repository: Optional[DealRepository] = None,
) -> list[CanonicalDeal]:
    if provider is not None:
        provider = _parse_provider(provider)
    repository = repository or DealRepository()
    return await repository.list_canonical_deals(account_id, provider)


def dedupe(items: Optional[Iterable[str]]) -> list[str]:
    """Fuzzy-deduplicate free text, keeping first occurrences."""
    return _dedupe(items)


async def cleanup_duplicates(
    account_id: str, repository: Optional[DealRepository] = None
) -> dict[str, int]:
    repository = repository or DealRepository()
    return await repository.cleanup_duplicates(account_id)


async def apply_deal_analysis(
    account_id: str,
    deal_id: str,
    pain_points: Optional[list[str]] = None,
    next_steps: Optional[list[str]] = None,
    context: Optional[str] = None,
    repository: Optional[DealRepository] = None,
    completion: Optional[TextCompletion] = None,
) -> Optional[CanonicalDeal]:
    """Merge analysis output into a stored deal.

    With ``context`` (meeting notes, email text) the text completion model
    is asked for more pain points and next steps first.  Returns None when
    the deal does not exist.
    """
    repository = repository or DealRepository()
    pain_points = list(pain_points or [])
    next_steps = list(next_steps or [])

    if context:
        row = await repository.get_deal(account_id, deal_id)
        if row is None:
            return None
        completion = completion or get_text_completion()
        if completion is None:
            raise IntegrationError("Text completion is not configured")
        analysis = await analyze_deal(to_canonical(row), context, completion)
        extra_pain, extra_steps = analysis_lists(analysis)
        pain_points.extend(extra_pain)
        next_steps.extend(extra_steps)

    updated = await repository.apply_analysis(account_id, deal_id, pain_points, next_steps)
    return to_canonical(updated) if updated is not None else None
