"""
Provider connection endpoints.

Endpoints:
- GET /api/integrations/{provider}/authorize - Get the OAuth authorization URL
- GET /api/integrations/{provider}/callback - OAuth redirect target
- POST /api/integrations/{account_id}/folk/verify - Connect Folk with an API key
- POST /api/integrations/{account_id}/{provider}/disconnect - Remove a connection
- GET /api/integrations/{account_id}/{provider}/status - Connection + sync status
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from config import settings
from connectors.errors import ErrorKind, ProviderError
from connectors.models import Provider
from services import integrations as integration_service
from services.oauth import account_id_from_state

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeResponse(BaseModel):
    """Response model for starting an OAuth flow."""

    provider: str
    authorization_url: str


class FolkVerifyRequest(BaseModel):
    """Request model for connecting Folk."""

    api_key: str
    email: Optional[str] = None


class ConnectResponse(BaseModel):
    """Response model for a stored connection."""

    status: str
    account_id: str
    provider: str
    email: Optional[str] = None


class DisconnectResponse(BaseModel):
    """Response model for disconnecting a provider."""

    status: str
    account_id: str
    provider: str


def _frontend_redirect(provider: str, **params: str) -> RedirectResponse:
    query = urlencode({"provider": provider, **params})
    return RedirectResponse(url=f"{settings.FRONTEND_URL.rstrip('/')}/integrations?{query}")


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    account_id: str = Query(..., description="Account to connect"),
) -> AuthorizeResponse:
    """Build the provider's authorization URL; the frontend redirects the user there."""
    url = integration_service.build_authorization_url(account_id, provider)
    return AuthorizeResponse(provider=provider, authorization_url=url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
) -> RedirectResponse:
    """Exchange the authorization code, store the credential, return to the frontend."""
    if error:
        logger.info("OAuth flow declined", extra={"provider": provider, "error": error})
        return _frontend_redirect(provider, error=error)
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        account_id = account_id_from_state(state)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid state parameter")

    try:
        await integration_service.connect_provider(account_id, provider, code)
    except ProviderError as exc:
        logger.warning(
            "OAuth callback failed",
            extra={"provider": provider, "account_id": account_id, "kind": exc.kind.value},
        )
        reason = "needs_reconnect" if exc.kind is ErrorKind.NEEDS_RECONNECT else "connection_failed"
        return _frontend_redirect(provider, error=reason)

    return _frontend_redirect(provider, connected="true")


@router.post("/{account_id}/folk/verify", response_model=ConnectResponse)
async def verify_folk(account_id: str, request: FolkVerifyRequest) -> ConnectResponse:
    """Verify a Folk API key against Folk and store it."""
    credential = await integration_service.connect_api_key(
        account_id, Provider.FOLK, request.api_key, email=request.email
    )
    return ConnectResponse(
        status="connected",
        account_id=account_id,
        provider=Provider.FOLK.value,
        email=credential.provider_metadata.get("email"),
    )


@router.post("/{account_id}/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(account_id: str, provider: str) -> DisconnectResponse:
    existed = await integration_service.disconnect_provider(account_id, provider)
    if not existed:
        raise HTTPException(status_code=404, detail=f"{provider} is not connected")
    return DisconnectResponse(status="disconnected", account_id=account_id, provider=provider)


@router.get("/{account_id}/{provider}/status")
async def connection_status(account_id: str, provider: str) -> dict[str, Any]:
    return await integration_service.get_connection_status(account_id, provider)
