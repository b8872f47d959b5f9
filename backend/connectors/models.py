"""
Typed record models for the connector interface.

Raw models mirror each provider's JSON shape (field aliases keep the
provider's own key names) and are validated at the adapter boundary, so
nothing past ``connectors`` ever handles an untyped dict.  ``RawDeal`` is
the union of every provider variant; the normalizer has one case per
variant and produces :class:`CanonicalDeal`.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """External systems we can connect to."""

    GMAIL = "gmail"
    HUBSPOT = "hubspot"
    PIPEDRIVE = "pipedrive"
    SALESFORCE = "salesforce"
    ZOHO = "zoho"
    FOLK = "folk"
    SLACK = "slack"


class DealStage(str, Enum):
    """Fixed stage vocabulary every provider stage is mapped onto."""

    INTERESTED = "interested"
    CONTACTED = "contacted"
    DEMO = "demo"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Stored OAuth token set (or API key) for one (account, provider) pair."""

    account_id: str
    provider: Provider
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: list[str] = Field(default_factory=list)
    api_domain: Optional[str] = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: datetime, buffer_seconds: int = 0) -> bool:
        """True when the token expires within ``buffer_seconds`` of ``now`` (naive UTC)."""
        if self.expires_at is None:
            return False
        return self.expires_at <= now + timedelta(seconds=buffer_seconds)


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------


class GmailThread(_ProviderModel):
    """A Gmail message and the thread it belongs to (parsed headers)."""

    id: str
    thread_id: str
    subject: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    to_emails: list[str] = Field(default_factory=list)
    cc_emails: list[str] = Field(default_factory=list)
    snippet: Optional[str] = None
    body_text: Optional[str] = None
    received_at: Optional[datetime] = None
    labels: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HubSpot
# ---------------------------------------------------------------------------


class HubSpotContact(_ProviderModel):
    id: str
    email: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    jobtitle: Optional[str] = None


class HubSpotDeal(_ProviderModel):
    id: str
    dealname: Optional[str] = None
    amount: Optional[str] = None
    deal_currency_code: Optional[str] = None
    dealstage: Optional[str] = None
    closedate: Optional[str] = None
    hs_deal_stage_probability: Optional[str] = None
    description: Optional[str] = None
    contact_ids: list[str] = Field(default_factory=list)
    contacts: list[HubSpotContact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipedrive
# ---------------------------------------------------------------------------


class PipedriveRef(_ProviderModel):
    """``org_id`` / ``person_id`` as returned on a deal: an id, optionally expanded."""

    value: Optional[int] = None
    name: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> Any:
        if isinstance(raw, int):
            return {"value": raw}
        return raw


class PipedriveValue(_ProviderModel):
    value: Optional[str] = None
    primary: bool = False


class PipedrivePerson(_ProviderModel):
    id: int
    name: Optional[str] = None
    email: list[PipedriveValue] = Field(default_factory=list)
    phone: list[PipedriveValue] = Field(default_factory=list)
    org_name: Optional[str] = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _wrap_scalar(cls, raw: Any) -> Any:
        if raw is None:
            return []
        if isinstance(raw, str):
            return [{"value": raw, "primary": True}]
        return raw


class PipedriveDeal(_ProviderModel):
    id: int
    title: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    stage_id: Optional[int] = None
    status: Optional[str] = None
    probability: Optional[float] = None
    expected_close_date: Optional[date] = None
    next_activity_note: Optional[str] = None
    org_id: Optional[PipedriveRef] = None
    person_id: Optional[PipedriveRef] = None
    person: Optional[PipedrivePerson] = None

    @field_validator("org_id", "person_id", mode="before")
    @classmethod
    def _coerce_ref(cls, raw: Any) -> Any:
        return PipedriveRef.coerce(raw)


# ---------------------------------------------------------------------------
# Salesforce
# ---------------------------------------------------------------------------


class SalesforceContact(_ProviderModel):
    id: str = Field(alias="Id")
    first_name: Optional[str] = Field(default=None, alias="FirstName")
    last_name: Optional[str] = Field(default=None, alias="LastName")
    email: Optional[str] = Field(default=None, alias="Email")
    phone: Optional[str] = Field(default=None, alias="Phone")
    title: Optional[str] = Field(default=None, alias="Title")
    account_name: Optional[str] = None
    # From the OpportunityContactRole junction row
    role: Optional[str] = None
    is_primary: bool = False


class SalesforceOpportunity(_ProviderModel):
    id: str = Field(alias="Id")
    name: Optional[str] = Field(default=None, alias="Name")
    amount: Optional[float] = Field(default=None, alias="Amount")
    currency_iso_code: Optional[str] = Field(default=None, alias="CurrencyIsoCode")
    close_date: Optional[date] = Field(default=None, alias="CloseDate")
    stage_name: Optional[str] = Field(default=None, alias="StageName")
    description: Optional[str] = Field(default=None, alias="Description")
    probability: Optional[float] = Field(default=None, alias="Probability")
    next_step: Optional[str] = Field(default=None, alias="NextStep")
    account_name: Optional[str] = None
    contacts: list[SalesforceContact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Zoho
# ---------------------------------------------------------------------------


class ZohoLookup(_ProviderModel):
    id: Optional[str] = None
    name: Optional[str] = None


class ZohoContact(_ProviderModel):
    id: str
    full_name: Optional[str] = Field(default=None, alias="Full_Name")
    first_name: Optional[str] = Field(default=None, alias="First_Name")
    last_name: Optional[str] = Field(default=None, alias="Last_Name")
    email: Optional[str] = Field(default=None, alias="Email")
    phone: Optional[str] = Field(default=None, alias="Phone")
    title: Optional[str] = Field(default=None, alias="Title")


class ZohoDeal(_ProviderModel):
    id: str
    deal_name: Optional[str] = Field(default=None, alias="Deal_Name")
    amount: Optional[float] = Field(default=None, alias="Amount")
    currency: Optional[str] = Field(default=None, alias="Currency")
    stage: Optional[str] = Field(default=None, alias="Stage")
    closing_date: Optional[date] = Field(default=None, alias="Closing_Date")
    probability: Optional[float] = Field(default=None, alias="Probability")
    next_step: Optional[str] = Field(default=None, alias="Next_Step")
    account_name: Optional[ZohoLookup] = Field(default=None, alias="Account_Name")
    contact_name: Optional[ZohoLookup] = Field(default=None, alias="Contact_Name")
    contact: Optional[ZohoContact] = None


# ---------------------------------------------------------------------------
# Folk
# ---------------------------------------------------------------------------


class FolkRef(_ProviderModel):
    id: Optional[str] = None
    name: Optional[str] = None


class FolkPerson(_ProviderModel):
    """Folk has no deal object: a person in a group carries the deal fields."""

    id: str
    full_name: Optional[str] = Field(default=None, alias="fullName")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    job_title: Optional[str] = Field(default=None, alias="jobTitle")
    emails: list[str] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)
    companies: list[FolkRef] = Field(default_factory=list)
    groups: list[FolkRef] = Field(default_factory=list)
    custom_field_values: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="customFieldValues"
    )

    @field_validator("companies", mode="before")
    @classmethod
    def _coerce_companies(cls, raw: Any) -> Any:
        if not raw:
            return []
        return [{"name": item} if isinstance(item, str) else item for item in raw]

    def group_fields(self) -> dict[str, Any]:
        """Custom field values of the person's first group."""
        if not self.groups or not self.groups[0].id:
            return {}
        return self.custom_field_values.get(self.groups[0].id, {}) or {}


RawDeal = Union[
    GmailThread, HubSpotDeal, PipedriveDeal, SalesforceOpportunity, ZohoDeal, FolkPerson
]

RawContact = Union[
    HubSpotContact, PipedrivePerson, SalesforceContact, ZohoContact
]


class DealPage(BaseModel):
    """One page from a provider plus where to continue."""

    items: list[Any] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    skipped: int = 0


# ---------------------------------------------------------------------------
# Canonical models
# ---------------------------------------------------------------------------


class CanonicalContact(BaseModel):
    """A person attached to a canonical deal."""

    model_config = ConfigDict(frozen=True)

    id: str
    deal_id: str
    external_id: Optional[str] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    is_primary: bool = False
    is_decision_maker: bool = False


class CanonicalDeal(BaseModel):
    """The single deal shape every provider is normalized into."""

    model_config = ConfigDict(frozen=True)

    id: str
    provider: Provider
    external_id: str
    title: Optional[str] = None
    company_name: Optional[str] = None
    value_amount: Optional[float] = None
    value_currency: str = "USD"
    stage: DealStage = DealStage.INTERESTED
    close_date: Optional[date] = None
    probability: Optional[int] = None
    pain_points: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    contacts: list[CanonicalContact] = Field(default_factory=list)
