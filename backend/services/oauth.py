"""
OAuth2 client for the providers we connect to directly.

Handles:
- Authorization URLs (state is ``"{account_id}:{nonce}"``)
- Authorization-code exchange
- Refresh-token grants

Every network call returns a ``Result``; httpx errors are classified here
and never reach callers.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
import secrets
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from config import get_oauth_client, get_redirect_uri, settings
from connectors.errors import (
    Err,
    ErrorKind,
    Ok,
    ProviderError,
    Result,
    classify_token_response,
    classify_transport_error,
)
from connectors.models import Credential, Provider
from connectors.registry import get_connector_class

logger = logging.getLogger(__name__)

SLACK_SCOPES: tuple[str, ...] = ("chat:write", "users:read", "app_mentions:read")

# Salesforce token responses carry no expires_in; sessions default to 2 hours
SALESFORCE_SESSION_SECONDS = 2 * 60 * 60
DEFAULT_EXPIRES_IN_SECONDS = 60 * 60

_SCOPE_SPLIT_RE = re.compile(r"[\s,]+")


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Endpoints and quirks of one provider's OAuth2 implementation."""

    provider: Provider
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...] = ()
    scope_separator: str = " "
    # Pipedrive wants client credentials as HTTP Basic auth, not form fields
    basic_auth: bool = False
    authorize_params: tuple[tuple[str, str], ...] = ()
    # None = token does not expire unless the response says otherwise
    default_expires_in: Optional[int] = DEFAULT_EXPIRES_IN_SECONDS
    user_info_url: Optional[str] = None


def _connector_scopes(provider: Provider) -> tuple[str, ...]:
    return tuple(get_connector_class(provider.value).meta.oauth_scopes)


def get_provider_config(provider: Provider | str) -> OAuthProviderConfig:
    """OAuth settings for a provider; raises ValueError for API-key providers."""
    provider = Provider(provider)
    offline_consent = (("access_type", "offline"), ("prompt", "consent"))

    if provider is Provider.GMAIL:
        return OAuthProviderConfig(
            provider=provider,
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            scopes=_connector_scopes(provider),
            authorize_params=offline_consent,
            user_info_url="https://www.googleapis.com/oauth2/v2/userinfo",
        )
    if provider is Provider.HUBSPOT:
        return OAuthProviderConfig(
            provider=provider,
            authorize_url="https://app.hubspot.com/oauth/authorize",
            token_url="https://api.hubapi.com/oauth/v1/token",
            scopes=_connector_scopes(provider),
            user_info_url="https://api.hubapi.com/oauth/v1/access-tokens/{access_token}",
        )
    if provider is Provider.PIPEDRIVE:
        return OAuthProviderConfig(
            provider=provider,
            authorize_url="https://oauth.pipedrive.com/oauth/authorize",
            token_url="https://oauth.pipedrive.com/oauth/token",
            basic_auth=True,
            user_info_url="https://api.pipedrive.com/v1/users/me",
        )
    if provider is Provider.SALESFORCE:
        login_url = settings.SALESFORCE_LOGIN_URL.rstrip("/")
        return OAuthProviderConfig(
            provider=provider,
            authorize_url=f"{login_url}/services/oauth2/authorize",
            token_url=f"{login_url}/services/oauth2/token",
            scopes=_connector_scopes(provider),
            authorize_params=(("prompt", "consent"),),
            default_expires_in=SALESFORCE_SESSION_SECONDS,
            user_info_url="{api_domain}/services/oauth2/userinfo",
        )
    if provider is Provider.ZOHO:
        accounts_url = settings.ZOHO_ACCOUNTS_URL.rstrip("/")
        return OAuthProviderConfig(
            provider=provider,
            authorize_url=f"{accounts_url}/oauth/v2/auth",
            token_url=f"{accounts_url}/oauth/v2/token",
            scopes=_connector_scopes(provider),
            scope_separator=",",
            authorize_params=offline_consent,
            user_info_url="{api_domain}/crm/v2/users?type=CurrentUser",
        )
    if provider is Provider.SLACK:
        return OAuthProviderConfig(
            provider=provider,
            authorize_url="https://slack.com/oauth/v2/authorize",
            token_url="https://slack.com/api/oauth.v2.access",
            scopes=SLACK_SCOPES,
            scope_separator=",",
            default_expires_in=None,
        )
    raise ValueError(f"{provider.value} does not use OAuth")


def is_oauth_provider(provider: Provider | str) -> bool:
    try:
        get_provider_config(provider)
    except ValueError:
        return False
    return True


def new_state(account_id: str) -> str:
    """OAuth ``state`` value carrying the account through the redirect."""
    return f"{account_id}:{secrets.token_urlsafe(16)}"


def account_id_from_state(state: str) -> str:
    """Recover the account id from a ``state`` value; raises ValueError if malformed."""
    account_id, sep, nonce = state.rpartition(":")
    if not sep or not account_id or not nonce:
        raise ValueError("Malformed OAuth state")
    return account_id


def _split_scope(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(s) for s in raw if s]
    if isinstance(raw, str):
        return [s for s in _SCOPE_SPLIT_RE.split(raw) if s]
    return []


def credential_from_token_response(
    account_id: str,
    provider: Provider | str,
    payload: dict[str, Any],
    now: Optional[datetime] = None,
    previous: Optional[Credential] = None,
) -> Credential:
    """Build a credential from a token endpoint response.

    Fields the response omits (refresh token, scope, api domain) are carried
    over from ``previous`` so a refresh never loses them.
    """
    provider = Provider(provider)
    config = get_provider_config(provider)
    now = now or datetime.utcnow()

    expires_in = payload.get("expires_in")
    expires_at: Optional[datetime] = None
    if expires_in is not None:
        expires_at = now + timedelta(seconds=int(expires_in))
    elif config.default_expires_in is not None:
        expires_at = now + timedelta(seconds=config.default_expires_in)

    scope = _split_scope(payload.get("scope"))
    if not scope:
        scope = list(previous.scope) if previous else list(config.scopes)

    # Salesforce: instance_url, Zoho/Pipedrive: api_domain
    api_domain = payload.get("instance_url") or payload.get("api_domain")
    if not api_domain and previous:
        api_domain = previous.api_domain

    metadata: dict[str, Any] = dict(previous.provider_metadata) if previous else {}
    if payload.get("token_type"):
        metadata["token_type"] = payload["token_type"]
    if provider is Provider.SLACK:
        team = payload.get("team") or {}
        metadata.update(
            {
                "team_id": team.get("id"),
                "team_name": team.get("name"),
                "bot_user_id": payload.get("bot_user_id"),
                "app_id": payload.get("app_id"),
            }
        )

    return Credential(
        account_id=account_id,
        provider=provider,
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
        expires_at=expires_at,
        scope=scope,
        api_domain=api_domain,
        provider_metadata=metadata,
    )


class OAuthClient:
    """Talks to provider authorize/token endpoints."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._client = client
        self.timeout: float = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS

    def build_authorization_url(
        self, account_id: str, provider: Provider | str, state: Optional[str] = None
    ) -> str:
        """URL to send the user to; raises FATAL ProviderError if the client id is unset."""
        config = get_provider_config(provider)
        client_id, _ = get_oauth_client(config.provider.value)
        if not client_id:
            raise ProviderError(
                ErrorKind.FATAL,
                f"{config.provider.value} OAuth client is not configured",
                provider=config.provider.value,
            )
        params: dict[str, str] = {
            "client_id": client_id,
            "redirect_uri": get_redirect_uri(config.provider.value),
            "response_type": "code",
            "state": state or new_state(account_id),
        }
        if config.scopes:
            params["scope"] = config.scope_separator.join(config.scopes)
        params.update(dict(config.authorize_params))
        return f"{config.authorize_url}?{urlencode(params)}"

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        data: Optional[dict[str, str]] = None,
        auth: Optional[httpx.BasicAuth] = None,
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(
                method, url, headers=headers, data=data, auth=auth, timeout=self.timeout
            )
        async with httpx.AsyncClient() as client:
            return await client.request(
                method, url, headers=headers, data=data, auth=auth, timeout=self.timeout
            )

    async def _token_request(
        self, config: OAuthProviderConfig, form: dict[str, str]
    ) -> Result[dict[str, Any]]:
        """POST a form-encoded grant to the provider's token endpoint."""
        provider = config.provider.value
        client_id, client_secret = get_oauth_client(provider)
        if not client_id or not client_secret:
            return Err(
                ProviderError(
                    ErrorKind.FATAL,
                    f"{provider} OAuth client is not configured",
                    provider=provider,
                )
            )

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        auth: Optional[httpx.BasicAuth] = None
        if config.basic_auth:
            auth = httpx.BasicAuth(client_id, client_secret)
        else:
            form = {**form, "client_id": client_id, "client_secret": client_secret}

        try:
            response = await self._send("POST", config.token_url, headers, data=form, auth=auth)
        except httpx.HTTPError as exc:
            logger.warning(
                "Token endpoint request failed",
                extra={"provider": provider, "grant_type": form.get("grant_type"), "error": str(exc)},
            )
            return Err(classify_transport_error(exc, provider))

        if response.status_code >= 400:
            error = classify_token_response(response, provider)
            logger.warning(
                "Token endpoint rejected grant",
                extra={
                    "provider": provider,
                    "grant_type": form.get("grant_type"),
                    "status_code": response.status_code,
                    "kind": error.kind.value,
                },
            )
            return Err(error)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return Err(
                ProviderError(
                    ErrorKind.SCHEMA_MISMATCH,
                    f"{provider} token endpoint returned an unexpected body",
                    provider=provider,
                    status_code=response.status_code,
                )
            )
        # Slack reports failures as 200 with ok=false
        if payload.get("ok") is False:
            return Err(
                ProviderError(
                    ErrorKind.NEEDS_RECONNECT,
                    f"{provider} OAuth failed: {payload.get('error', 'unknown error')}",
                    provider=provider,
                    status_code=response.status_code,
                )
            )
        if not payload.get("access_token"):
            return Err(
                ProviderError(
                    ErrorKind.SCHEMA_MISMATCH,
                    f"{provider} token response has no access_token",
                    provider=provider,
                    status_code=response.status_code,
                )
            )
        return Ok(payload)

    async def exchange_code(
        self, account_id: str, provider: Provider | str, code: str
    ) -> Result[Credential]:
        """Exchange an authorization code for a credential (not persisted)."""
        config = get_provider_config(provider)
        result = await self._token_request(
            config,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": get_redirect_uri(config.provider.value),
            },
        )
        if isinstance(result, Err):
            return result

        credential = credential_from_token_response(account_id, config.provider, result.value)
        user_info = await self._fetch_user_info(config, credential)
        updates = _user_metadata(config.provider, user_info)
        if updates:
            # Pipedrive only reveals the company domain through users/me
            company_domain = updates.pop("api_domain", None)
            api_domain = credential.api_domain or company_domain
            credential = credential.model_copy(
                update={
                    "api_domain": api_domain,
                    "provider_metadata": {**credential.provider_metadata, **updates},
                }
            )
        logger.info(
            "Exchanged authorization code",
            extra={"account_id": account_id, "provider": config.provider.value},
        )
        return Ok(credential)

    async def refresh(self, credential: Credential) -> Result[Credential]:
        """Run a refresh-token grant; the caller decides whether to persist it."""
        config = get_provider_config(credential.provider)
        if not credential.refresh_token:
            return Err(
                ProviderError(
                    ErrorKind.NEEDS_RECONNECT,
                    f"{config.provider.value} credential has no refresh token",
                    provider=config.provider.value,
                )
            )
        result = await self._token_request(
            config,
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
        )
        if isinstance(result, Err):
            return result
        return Ok(
            credential_from_token_response(
                credential.account_id, config.provider, result.value, previous=credential
            )
        )

    async def _fetch_user_info(
        self, config: OAuthProviderConfig, credential: Credential
    ) -> dict[str, Any]:
        """Best-effort identity lookup; failures are logged and ignored."""
        if not config.user_info_url:
            return {}
        if "{api_domain}" in config.user_info_url and not credential.api_domain:
            return {}
        url = config.user_info_url.format(
            access_token=credential.access_token,
            api_domain=(credential.api_domain or "").rstrip("/"),
        )
        header_prefix = "Zoho-oauthtoken" if config.provider is Provider.ZOHO else "Bearer"
        headers = {"Authorization": f"{header_prefix} {credential.access_token}"}
        try:
            response = await self._send("GET", url, headers)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Failed to fetch user info, continuing without it",
                extra={
                    "provider": config.provider.value,
                    "kind": ErrorKind.PARTIAL_FAILURE.value,
                    "error": str(exc),
                },
            )
            return {}
        return body if isinstance(body, dict) else {}


def _user_metadata(provider: Provider, body: dict[str, Any]) -> dict[str, Any]:
    """Pull the connected user's identity out of a user-info response."""
    if not body:
        return {}
    if provider is Provider.GMAIL:
        return {"email": body.get("email")}
    if provider is Provider.HUBSPOT:
        return {"email": body.get("user"), "hub_id": body.get("hub_id")}
    if provider is Provider.PIPEDRIVE:
        data = body.get("data") or {}
        updates: dict[str, Any] = {"email": data.get("email")}
        if data.get("company_domain"):
            updates["api_domain"] = f"https://{data['company_domain']}.pipedrive.com"
        return updates
    if provider is Provider.SALESFORCE:
        return {"email": body.get("email"), "organization_id": body.get("organization_id")}
    if provider is Provider.ZOHO:
        users = body.get("users") or [{}]
        return {"email": users[0].get("email")}
    return {}
