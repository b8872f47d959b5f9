"""
Zoho CRM connector implementation.

Zoho returns deals and contacts as two unrelated collections; deals only
carry a ``Contact_Name`` lookup ({id, name}).  The contacts collection is
read once per connector instance and joined onto each deal by id.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from config import settings
from connectors.base import BaseConnector
from connectors.errors import Err, Ok, Result
from connectors.models import Credential, DealPage, ZohoContact, ZohoDeal
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

ZOHO_PAGE_SIZE = 200
# Safety stop for the contacts collection walk
ZOHO_MAX_CONTACT_PAGES = 50


class ZohoConnector(BaseConnector):
    """Connector for Zoho CRM."""

    source_system = "zoho"
    meta = ConnectorMeta(
        name="Zoho CRM",
        slug="zoho",
        auth_type=AuthType.OAUTH2,
        scope=ConnectorScope.ORGANIZATION,
        entity_types=["deals", "contacts"],
        oauth_scopes=["ZohoCRM.modules.deals.READ", "ZohoCRM.modules.contacts.READ", "ZohoCRM.users.READ"],
        single_contact=True,
        description="Zoho CRM – deals joined with the contacts collection",
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._contacts_cache: dict[str, dict[str, ZohoContact]] = {}

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        return {
            "Authorization": f"Zoho-oauthtoken {credential.access_token}",
            "Content-Type": "application/json",
        }

    def _base_url(self, credential: Credential) -> str:
        return (credential.api_domain or settings.ZOHO_API_DOMAIN).rstrip("/")

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        page = int(cursor) if cursor else 1
        result = await self._make_request(
            credential,
            "GET",
            f"{self._base_url(credential)}/crm/v2/Deals",
            params={"per_page": ZOHO_PAGE_SIZE, "page": page},
        )
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value

        deals, skipped = self._validate_all(ZohoDeal, data.get("data") or [])
        if any(d.contact_name and d.contact_name.id for d in deals):
            contacts = await self._get_contacts(credential)
            deals = [
                deal.model_copy(update={"contact": contacts.get(deal.contact_name.id)})
                if deal.contact_name and deal.contact_name.id
                else deal
                for deal in deals
            ]

        more = bool((data.get("info") or {}).get("more_records"))
        return Ok(DealPage(items=deals, next_cursor=str(page + 1) if more else None, skipped=skipped))

    async def _get_contacts(self, credential: Credential) -> dict[str, ZohoContact]:
        cached = self._contacts_cache.get(credential.account_id)
        if cached is not None:
            return cached

        contacts: dict[str, ZohoContact] = {}
        page = 1
        while page <= ZOHO_MAX_CONTACT_PAGES:
            result = await self._make_request(
                credential,
                "GET",
                f"{self._base_url(credential)}/crm/v2/Contacts",
                params={"per_page": ZOHO_PAGE_SIZE, "page": page},
            )
            if isinstance(result, Err):
                self._log_partial("contacts_collection", result.error)
                break
            rows, _ = self._validate_all(ZohoContact, result.value.get("data") or [])
            contacts.update({c.id: c for c in rows})
            if not (result.value.get("info") or {}).get("more_records"):
                break
            page += 1

        self._contacts_cache[credential.account_id] = contacts
        return contacts
