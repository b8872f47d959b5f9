"""
Folk CRM connector implementation.

Folk has no deal object and no OAuth: an API key (sent as a Bearer token)
lists people, and each person's first group carries the deal fields as
custom field values.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from config import settings
from connectors.base import BaseConnector
from connectors.errors import Err, Ok, Result
from connectors.models import Credential, DealPage, FolkPerson
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

FOLK_PAGE_SIZE = 100


class FolkConnector(BaseConnector):
    """Connector for Folk CRM."""

    source_system = "folk"
    meta = ConnectorMeta(
        name="Folk",
        slug="folk",
        auth_type=AuthType.API_KEY,
        scope=ConnectorScope.ORGANIZATION,
        entity_types=["deals", "contacts"],
        single_contact=True,
        description="Folk CRM – people with deal fields in their group",
    )

    def _base_url(self, credential: Credential) -> str:
        base = (credential.api_domain or settings.FOLK_API_BASE_URL).rstrip("/")
        return f"{base}/{settings.FOLK_API_VERSION}"

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        params: dict[str, Any] = {"limit": FOLK_PAGE_SIZE}
        if cursor:
            params["cursor"] = cursor
        result = await self._make_request(
            credential, "GET", f"{self._base_url(credential)}/people", params=params
        )
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value.get("data") or {}

        people, skipped = self._validate_all(FolkPerson, data.get("items") or [])
        next_link: Optional[str] = (data.get("pagination") or {}).get("nextLink")
        return Ok(DealPage(items=people, next_cursor=_cursor_from_link(next_link), skipped=skipped))

    async def verify(self, credential: Credential) -> Result[dict[str, Any]]:
        """Check an API key against ``/users/me``; returns the user payload."""
        result = await self._make_request(
            credential, "GET", f"{self._base_url(credential)}/users/me"
        )
        if isinstance(result, Err):
            return result
        return Ok(result.value.get("data") or result.value)


def _cursor_from_link(next_link: Optional[str]) -> Optional[str]:
    """Folk paginates with a full ``nextLink`` URL; keep only its cursor."""
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("cursor")
    return values[0] if values else None
