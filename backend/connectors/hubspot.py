"""
HubSpot connector implementation.

Responsibilities:
- Page through CRM v3 deals with their contact associations
- Resolve associated contacts with one batch-read per page
- Validate records into HubSpotDeal / HubSpotContact
"""

import logging
from datetime import datetime
from typing import Any, Optional

from connectors.base import BaseConnector
from connectors.errors import Err, Ok, Result
from connectors.models import Credential, DealPage, HubSpotContact, HubSpotDeal
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_PAGE_SIZE = 100
HUBSPOT_BATCH_READ_LIMIT = 100

DEAL_PROPERTIES: list[str] = [
    "dealname",
    "amount",
    "deal_currency_code",
    "dealstage",
    "closedate",
    "hs_deal_stage_probability",
    "description",
]
CONTACT_PROPERTIES: list[str] = ["email", "firstname", "lastname", "phone", "company", "jobtitle"]


class HubSpotConnector(BaseConnector):
    """Connector for HubSpot CRM."""

    source_system = "hubspot"
    meta = ConnectorMeta(
        name="HubSpot",
        slug="hubspot",
        auth_type=AuthType.OAUTH2,
        scope=ConnectorScope.ORGANIZATION,
        entity_types=["deals", "contacts"],
        oauth_scopes=[
            "oauth",
            "crm.objects.deals.read",
            "crm.objects.contacts.read",
            "crm.objects.owners.read",
        ],
        description="HubSpot CRM – deals and their associated contacts",
    )

    def _base_url(self, credential: Credential) -> str:
        return (credential.api_domain or HUBSPOT_API_BASE).rstrip("/")

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        params: dict[str, Any] = {
            "limit": HUBSPOT_PAGE_SIZE,
            "properties": ",".join(DEAL_PROPERTIES),
            "associations": "contacts",
        }
        if cursor:
            params["after"] = cursor

        result = await self._make_request(
            credential, "GET", f"{self._base_url(credential)}/crm/v3/objects/deals", params=params
        )
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value

        payloads: list[dict[str, Any]] = []
        for raw in data.get("results", []):
            associations = (raw.get("associations") or {}).get("contacts") or {}
            payloads.append(
                {
                    **(raw.get("properties") or {}),
                    "id": raw.get("id"),
                    "contact_ids": [str(a.get("id")) for a in associations.get("results", []) if a.get("id")],
                }
            )
        deals, skipped = self._validate_all(HubSpotDeal, payloads)

        contacts_by_id = await self._fetch_contacts(
            credential, [cid for deal in deals for cid in deal.contact_ids]
        )
        deals = [
            deal.model_copy(
                update={"contacts": [contacts_by_id[cid] for cid in deal.contact_ids if cid in contacts_by_id]}
            )
            for deal in deals
        ]

        next_cursor: Optional[str] = ((data.get("paging") or {}).get("next") or {}).get("after")
        logger.debug(
            "Fetched HubSpot deal page",
            extra={"count": len(deals), "skipped": skipped, "has_more": bool(next_cursor)},
        )
        return Ok(DealPage(items=deals, next_cursor=next_cursor, skipped=skipped))

    async def _fetch_contacts(
        self, credential: Credential, contact_ids: list[str]
    ) -> dict[str, HubSpotContact]:
        """Batch-read the page's associated contacts; failures leave gaps."""
        unique_ids: list[str] = list(dict.fromkeys(contact_ids))
        if not unique_ids:
            return {}

        url = f"{self._base_url(credential)}/crm/v3/objects/contacts/batch/read"

        async def _read_batch(ids: list[str]) -> list[dict[str, Any]]:
            result = await self._make_request(
                credential,
                "POST",
                url,
                json_data={
                    "properties": CONTACT_PROPERTIES,
                    "inputs": [{"id": cid} for cid in ids],
                },
            )
            if isinstance(result, Err):
                raise result.error
            return result.value.get("results", [])

        batches = [
            unique_ids[i:i + HUBSPOT_BATCH_READ_LIMIT]
            for i in range(0, len(unique_ids), HUBSPOT_BATCH_READ_LIMIT)
        ]
        outcomes = await self._fan_out([_read_batch(b) for b in batches], stage="contacts_batch_read")

        contacts: dict[str, HubSpotContact] = {}
        for rows in outcomes:
            for row in rows or []:
                contact = self._validate(
                    HubSpotContact, {**(row.get("properties") or {}), "id": row.get("id")}
                )
                if contact is not None:
                    contacts[contact.id] = contact
        return contacts
