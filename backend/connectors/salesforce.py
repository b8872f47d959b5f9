"""
Salesforce connector implementation.

Opportunities are paged with SOQL ``nextRecordsUrl``.  Contacts are linked
through the OpportunityContactRole junction object, so each page costs two
extra queries: junction rows for the page's opportunity ids, then the
referenced Contact rows.
"""

import logging
import re
from datetime import datetime
from typing import Any, Optional

from config import settings
from connectors.base import BaseConnector
from connectors.errors import Err, ErrorKind, Ok, ProviderError, Result
from connectors.models import Credential, DealPage, SalesforceContact, SalesforceOpportunity
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

# IN (...) clauses are chunked to keep query URLs short
SOQL_IN_CHUNK = 200
_SF_ID_RE = re.compile(r"^[A-Za-z0-9]{15,18}$")

OPPORTUNITY_SOQL = (
    "SELECT Id, Name, Amount, CloseDate, StageName, Description, Probability, "
    "NextStep, Account.Name FROM Opportunity ORDER BY CreatedDate DESC"
)


def _in_clause(ids: list[str]) -> str:
    return ", ".join(f"'{i}'" for i in ids if _SF_ID_RE.match(i))


class SalesforceConnector(BaseConnector):
    """Connector for Salesforce CRM."""

    source_system = "salesforce"
    meta = ConnectorMeta(
        name="Salesforce",
        slug="salesforce",
        auth_type=AuthType.OAUTH2,
        scope=ConnectorScope.ORGANIZATION,
        entity_types=["deals", "contacts"],
        oauth_scopes=["api", "refresh_token", "offline_access"],
        description="Salesforce CRM – opportunities and contact roles",
    )

    def _data_url(self, credential: Credential) -> str:
        return f"{credential.api_domain.rstrip('/')}/services/data/{settings.SALESFORCE_API_VERSION}"

    async def _query(self, credential: Credential, soql: str) -> Result[dict[str, Any]]:
        return await self._make_request(
            credential, "GET", f"{self._data_url(credential)}/query", params={"q": soql}
        )

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        if not credential.api_domain:
            return Err(
                ProviderError(
                    ErrorKind.NEEDS_RECONNECT,
                    "Salesforce credential has no instance URL",
                    provider=self.source_system,
                )
            )

        if cursor:
            # nextRecordsUrl is an absolute path on the tenant instance
            result = await self._make_request(
                credential, "GET", f"{credential.api_domain.rstrip('/')}{cursor}"
            )
        else:
            result = await self._query(credential, OPPORTUNITY_SOQL)
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value

        payloads = [
            {**record, "account_name": (record.get("Account") or {}).get("Name")}
            for record in data.get("records", [])
        ]
        opportunities, skipped = self._validate_all(SalesforceOpportunity, payloads)

        contacts_by_opportunity = await self._fetch_contact_roles(
            credential, [opp.id for opp in opportunities]
        )
        opportunities = [
            opp.model_copy(update={"contacts": contacts_by_opportunity.get(opp.id, [])})
            for opp in opportunities
        ]

        next_cursor: Optional[str] = None if data.get("done", True) else data.get("nextRecordsUrl")
        return Ok(DealPage(items=opportunities, next_cursor=next_cursor, skipped=skipped))

    async def _query_chunks(
        self, credential: Credential, template: str, ids: list[str], stage: str
    ) -> list[dict[str, Any]]:
        """Run ``template`` over chunks of ids concurrently; failed chunks are dropped."""

        async def _run(chunk: list[str]) -> list[dict[str, Any]]:
            clause = _in_clause(chunk)
            if not clause:
                return []
            result = await self._query(credential, template.format(ids=clause))
            if isinstance(result, Err):
                raise result.error
            return result.value.get("records", [])

        chunks = [ids[i:i + SOQL_IN_CHUNK] for i in range(0, len(ids), SOQL_IN_CHUNK)]
        outcomes = await self._fan_out([_run(c) for c in chunks], stage=stage)
        return [row for rows in outcomes for row in (rows or [])]

    async def _fetch_contact_roles(
        self, credential: Credential, opportunity_ids: list[str]
    ) -> dict[str, list[SalesforceContact]]:
        if not opportunity_ids:
            return {}

        roles = await self._query_chunks(
            credential,
            "SELECT OpportunityId, ContactId, Role, IsPrimary FROM OpportunityContactRole "
            "WHERE OpportunityId IN ({ids})",
            opportunity_ids,
            stage="contact_roles",
        )
        contact_ids: list[str] = list(dict.fromkeys(r["ContactId"] for r in roles if r.get("ContactId")))
        if not contact_ids:
            return {}

        rows = await self._query_chunks(
            credential,
            "SELECT Id, FirstName, LastName, Email, Phone, Title, Account.Name FROM Contact "
            "WHERE Id IN ({ids})",
            contact_ids,
            stage="contacts",
        )
        contacts: dict[str, dict[str, Any]] = {
            row["Id"]: {**row, "account_name": (row.get("Account") or {}).get("Name")}
            for row in rows
            if row.get("Id")
        }

        by_opportunity: dict[str, list[SalesforceContact]] = {}
        for role in roles:
            row = contacts.get(role.get("ContactId") or "")
            if row is None:
                continue
            contact = self._validate(
                SalesforceContact,
                {**row, "role": role.get("Role"), "is_primary": bool(role.get("IsPrimary"))},
            )
            if contact is not None:
                by_opportunity.setdefault(role["OpportunityId"], []).append(contact)
        return by_opportunity
