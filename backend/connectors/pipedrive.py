"""
Pipedrive connector implementation.

Pipedrive has no batch endpoint for persons, so each deal's person is fetched
one by one; the fetches for a page run concurrently and a missing or failed
person only drops that deal's contact.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from connectors.base import BaseConnector
from connectors.errors import Err, Ok, Result
from connectors.models import Credential, DealPage, PipedriveDeal, PipedrivePerson
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

PIPEDRIVE_API_BASE = "https://api.pipedrive.com/v1"
PIPEDRIVE_PAGE_SIZE = 500
# Upper bound on per-page person lookups
PIPEDRIVE_MAX_PERSON_FETCHES = 100


class PipedriveConnector(BaseConnector):
    """Connector for Pipedrive CRM."""

    source_system = "pipedrive"
    meta = ConnectorMeta(
        name="Pipedrive",
        slug="pipedrive",
        auth_type=AuthType.OAUTH2,
        scope=ConnectorScope.ORGANIZATION,
        entity_types=["deals", "contacts"],
        oauth_scopes=["deals:read", "contacts:read"],
        single_contact=True,
        description="Pipedrive CRM – deals and their primary person",
    )

    def _base_url(self, credential: Credential) -> str:
        if credential.api_domain:
            return f"{credential.api_domain.rstrip('/')}/api/v1"
        return PIPEDRIVE_API_BASE

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        params: dict[str, Any] = {"start": int(cursor) if cursor else 0, "limit": PIPEDRIVE_PAGE_SIZE}
        result = await self._make_request(
            credential, "GET", f"{self._base_url(credential)}/deals", params=params
        )
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value

        deals, skipped = self._validate_all(PipedriveDeal, data.get("data") or [])
        persons = await self._fetch_persons(credential, deals)
        deals = [
            deal.model_copy(update={"person": persons.get(deal.person_id.value)})
            if deal.person_id and deal.person_id.value is not None
            else deal
            for deal in deals
        ]

        pagination: dict[str, Any] = (data.get("additional_data") or {}).get("pagination") or {}
        next_cursor: Optional[str] = None
        if pagination.get("more_items_in_collection") and pagination.get("next_start") is not None:
            next_cursor = str(pagination["next_start"])

        return Ok(DealPage(items=deals, next_cursor=next_cursor, skipped=skipped))

    async def _fetch_persons(
        self, credential: Credential, deals: list[PipedriveDeal]
    ) -> dict[int, PipedrivePerson]:
        person_ids: list[int] = list(
            dict.fromkeys(
                d.person_id.value for d in deals if d.person_id and d.person_id.value is not None
            )
        )
        if len(person_ids) > PIPEDRIVE_MAX_PERSON_FETCHES:
            logger.info(
                "Capping Pipedrive person lookups for page",
                extra={"requested": len(person_ids), "cap": PIPEDRIVE_MAX_PERSON_FETCHES},
            )
            person_ids = person_ids[:PIPEDRIVE_MAX_PERSON_FETCHES]
        if not person_ids:
            return {}

        base_url = self._base_url(credential)

        async def _get_person(person_id: int) -> Optional[PipedrivePerson]:
            result = await self._make_request(credential, "GET", f"{base_url}/persons/{person_id}")
            if isinstance(result, Err):
                if result.error.status_code == 404:
                    logger.debug("Pipedrive person %s not found", person_id)
                    return None
                raise result.error
            return self._validate(PipedrivePerson, result.value.get("data") or {})

        outcomes = await self._fan_out([_get_person(pid) for pid in person_ids], stage="person_fetch")
        return {person.id: person for person in outcomes if person is not None}
