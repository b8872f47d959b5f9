"""
Map provider raw deals onto the canonical Deal/Contact model.

``normalize`` is pure: identifiers are uuid5 values derived from
(provider, external id), there are no timestamps, and the same input always
produces an equal CanonicalDeal.  Persistence stamps times separately.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from functools import singledispatch
from typing import Any, Optional, Sequence

from connectors.models import (
    CanonicalContact,
    CanonicalDeal,
    DealStage,
    FolkPerson,
    GmailThread,
    HubSpotContact,
    HubSpotDeal,
    PipedriveDeal,
    PipedrivePerson,
    Provider,
    RawContact,
    RawDeal,
    SalesforceContact,
    SalesforceOpportunity,
    ZohoContact,
    ZohoDeal,
)
from services.deduplication import dedupe

logger = logging.getLogger(__name__)

# Fixed namespace so ids are stable across processes and deploys
CANONICAL_NAMESPACE = uuid.UUID("6f1c7a52-2d0e-4c1b-9a4e-3b7d5c2e8f10")

DEFAULT_CURRENCY = "USD"
# Freshly imported CRM deals get a starter next step
DEFAULT_NEXT_STEPS: tuple[str, ...] = ("Schedule a meeting",)

# ---------------------------------------------------------------------------
# Stage maps
# ---------------------------------------------------------------------------

PIPEDRIVE_STAGES: dict[int, DealStage] = {
    1: DealStage.CONTACTED,
    2: DealStage.INTERESTED,
    3: DealStage.DEMO,
    4: DealStage.PROPOSAL,
    5: DealStage.NEGOTIATION,
}

SALESFORCE_STAGES: dict[str, DealStage] = {
    "Prospecting": DealStage.INTERESTED,
    "Qualification": DealStage.CONTACTED,
    "Needs Analysis": DealStage.CONTACTED,
    "Value Proposition": DealStage.DEMO,
    "Id. Decision Makers": DealStage.PROPOSAL,
    "Perception Analysis": DealStage.PROPOSAL,
    "Proposal/Price Quote": DealStage.PROPOSAL,
    "Negotiation/Review": DealStage.NEGOTIATION,
    "Closed Won": DealStage.WON,
    "Closed Lost": DealStage.LOST,
}

HUBSPOT_STAGES: dict[str, DealStage] = {
    "appointmentscheduled": DealStage.INTERESTED,
    "qualifiedtobuy": DealStage.CONTACTED,
    "presentationscheduled": DealStage.DEMO,
    "decisionmakerbroughtin": DealStage.PROPOSAL,
    "contractsent": DealStage.NEGOTIATION,
    "closedwon": DealStage.WON,
    "closedlost": DealStage.LOST,
}

# Keys are lowercase; lookups are case-insensitive
ZOHO_STAGES: dict[str, DealStage] = {
    "qualification": DealStage.CONTACTED,
    "needs analysis": DealStage.CONTACTED,
    "value proposition": DealStage.DEMO,
    "identify decision makers": DealStage.PROPOSAL,
    "proposal/price quote": DealStage.PROPOSAL,
    "negotiation/review": DealStage.NEGOTIATION,
    "closed won": DealStage.WON,
    "closed lost": DealStage.LOST,
}

FOLK_STAGES: dict[str, DealStage] = {
    "lead": DealStage.INTERESTED,
    "qualified": DealStage.CONTACTED,
    "follow-up": DealStage.CONTACTED,
    "demo": DealStage.DEMO,
    "proposal": DealStage.PROPOSAL,
    "negotiation": DealStage.NEGOTIATION,
    "closed-won": DealStage.WON,
    "closed-lost": DealStage.LOST,
}

# Checked in order; first keyword contained in the stage name wins
STAGE_KEYWORDS: tuple[tuple[tuple[str, ...], DealStage], ...] = (
    (("qualif",), DealStage.CONTACTED),
    (("demo", "presentation"), DealStage.DEMO),
    (("proposal", "quote"), DealStage.PROPOSAL),
    (("negotiation", "review"), DealStage.NEGOTIATION),
    (("won",), DealStage.WON),
    (("lost",), DealStage.LOST),
    (("follow",), DealStage.CONTACTED),
    (("lead",), DealStage.INTERESTED),
)


def map_stage_by_name(name: Optional[str], table: dict[str, DealStage]) -> DealStage:
    """Exact (case-insensitive) lookup, then keyword fallback, then the default."""
    if not name:
        return DealStage.INTERESTED
    lowered = name.strip().lower()
    if lowered in table:
        return table[lowered]
    for keywords, stage in STAGE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return stage
    return DealStage.INTERESTED


def map_pipedrive_stage(stage_id: Optional[int], status: Optional[str]) -> DealStage:
    # Closed deals keep their last pipeline stage id; status is authoritative
    if status == "won":
        return DealStage.WON
    if status == "lost":
        return DealStage.LOST
    if stage_id is None:
        return DealStage.INTERESTED
    return PIPEDRIVE_STAGES.get(stage_id, DealStage.INTERESTED)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def deal_id_for(provider: Provider, external_id: str) -> str:
    return str(uuid.uuid5(CANONICAL_NAMESPACE, f"{provider.value}:deal:{external_id}"))


def contact_id_for(deal_id: str, contact_key: str) -> str:
    return str(uuid.uuid5(CANONICAL_NAMESPACE, f"{deal_id}:contact:{contact_key}"))


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_probability(value: Any) -> Optional[int]:
    number = _to_float(value)
    if number is None:
        return None
    # HubSpot reports 0-1, everyone else 0-100
    if 0 < number <= 1:
        number *= 100
    return int(round(number))


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _full_name(*parts: Optional[str]) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def _text_list(*values: Optional[str]) -> list[str]:
    return [v for v in values if v and v.strip()]


def _limit_contacts(contacts: list[CanonicalContact], single: bool) -> list[CanonicalContact]:
    """One contact for single-association providers, the full set otherwise.

    Exactly one contact ends up primary: the provider's primary if it named
    one, else the first.
    """
    if not contacts:
        return []
    if single:
        contacts = contacts[:1]
    if not any(c.is_primary for c in contacts):
        contacts = [contacts[0].model_copy(update={"is_primary": True}), *contacts[1:]]
    return contacts


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@singledispatch
def normalize_contact(raw: Any, deal_id: str) -> Optional[CanonicalContact]:
    raise TypeError(f"Unsupported raw contact type: {type(raw).__name__}")


@normalize_contact.register
def _(raw: HubSpotContact, deal_id: str) -> Optional[CanonicalContact]:
    return CanonicalContact(
        id=contact_id_for(deal_id, raw.id),
        deal_id=deal_id,
        external_id=raw.id,
        name=_full_name(raw.firstname, raw.lastname) or raw.email or "Unknown Contact",
        email=raw.email,
        phone=raw.phone,
        role=raw.jobtitle,
    )


@normalize_contact.register
def _(raw: PipedrivePerson, deal_id: str) -> Optional[CanonicalContact]:
    primary_email = next((e.value for e in raw.email if e.primary and e.value), None)
    email = primary_email or next((e.value for e in raw.email if e.value), None)
    phone = next((p.value for p in raw.phone if p.value), None)
    return CanonicalContact(
        id=contact_id_for(deal_id, str(raw.id)),
        deal_id=deal_id,
        external_id=str(raw.id),
        name=raw.name or email or "Unknown Contact",
        email=email,
        phone=phone,
        role="Primary Contact",
        is_primary=True,
    )


@normalize_contact.register
def _(raw: SalesforceContact, deal_id: str) -> Optional[CanonicalContact]:
    role = raw.role or raw.title
    return CanonicalContact(
        id=contact_id_for(deal_id, raw.id),
        deal_id=deal_id,
        external_id=raw.id,
        name=_full_name(raw.first_name, raw.last_name) or raw.email or "Unknown Contact",
        email=raw.email,
        phone=raw.phone,
        role=role,
        is_primary=raw.is_primary,
        is_decision_maker=bool(raw.role and "decision maker" in raw.role.lower()),
    )


@normalize_contact.register
def _(raw: ZohoContact, deal_id: str) -> Optional[CanonicalContact]:
    return CanonicalContact(
        id=contact_id_for(deal_id, raw.id),
        deal_id=deal_id,
        external_id=raw.id,
        name=raw.full_name or _full_name(raw.first_name, raw.last_name) or raw.email or "Unknown Contact",
        email=raw.email,
        phone=raw.phone,
        role=raw.title,
        is_primary=True,
    )


def _contacts(
    raw_contacts: Sequence[RawContact], deal_id: str, single: bool
) -> list[CanonicalContact]:
    seen: set[str] = set()
    contacts: list[CanonicalContact] = []
    for raw in raw_contacts:
        contact = normalize_contact(raw, deal_id)
        if contact is None or contact.id in seen:
            continue
        seen.add(contact.id)
        contacts.append(contact)
    return _limit_contacts(contacts, single)


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


@singledispatch
def _normalize(raw: Any, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    raise TypeError(f"Unsupported raw deal type: {type(raw).__name__}")


@_normalize.register
def _(raw: HubSpotDeal, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    deal_id = deal_id_for(Provider.HUBSPOT, raw.id)
    contacts_in = list(raw_contacts) if raw_contacts is not None else list(raw.contacts)
    contacts = _contacts(contacts_in, deal_id, single=False)
    company = next((c.company for c in raw.contacts if c.company), None)
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.HUBSPOT,
        external_id=raw.id,
        title=raw.dealname,
        company_name=company,
        value_amount=_to_float(raw.amount),
        value_currency=raw.deal_currency_code or DEFAULT_CURRENCY,
        stage=HUBSPOT_STAGES.get(raw.dealstage or "", DealStage.INTERESTED),
        close_date=_to_date(raw.closedate),
        probability=_to_probability(raw.hs_deal_stage_probability),
        next_steps=list(DEFAULT_NEXT_STEPS),
        contacts=contacts,
    )


@_normalize.register
def _(raw: PipedriveDeal, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    external_id = str(raw.id)
    deal_id = deal_id_for(Provider.PIPEDRIVE, external_id)
    if raw_contacts is not None:
        contacts_in = list(raw_contacts)
    else:
        contacts_in = [raw.person] if raw.person is not None else []
    contacts = _contacts(contacts_in, deal_id, single=True)
    company = (raw.org_id.name if raw.org_id else None) or (raw.person.org_name if raw.person else None)
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.PIPEDRIVE,
        external_id=external_id,
        title=raw.title,
        company_name=company,
        value_amount=raw.value,
        value_currency=raw.currency or DEFAULT_CURRENCY,
        stage=map_pipedrive_stage(raw.stage_id, raw.status),
        close_date=raw.expected_close_date,
        probability=_to_probability(raw.probability),
        next_steps=dedupe([*_text_list(raw.next_activity_note), *DEFAULT_NEXT_STEPS]),
        contacts=contacts,
    )


@_normalize.register
def _(raw: SalesforceOpportunity, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    deal_id = deal_id_for(Provider.SALESFORCE, raw.id)
    contacts_in = list(raw_contacts) if raw_contacts is not None else list(raw.contacts)
    # Primary contact role first so it survives ordering
    contacts_in.sort(key=lambda c: not getattr(c, "is_primary", False))
    contacts = _contacts(contacts_in, deal_id, single=False)
    company = raw.account_name or next(
        (c.account_name for c in raw.contacts if c.account_name), None
    )
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.SALESFORCE,
        external_id=raw.id,
        title=raw.name,
        company_name=company,
        value_amount=raw.amount,
        value_currency=raw.currency_iso_code or DEFAULT_CURRENCY,
        stage=SALESFORCE_STAGES.get(raw.stage_name or "", DealStage.INTERESTED),
        close_date=raw.close_date,
        probability=_to_probability(raw.probability),
        next_steps=dedupe([*_text_list(raw.next_step), *DEFAULT_NEXT_STEPS]),
        contacts=contacts,
    )


@_normalize.register
def _(raw: ZohoDeal, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    deal_id = deal_id_for(Provider.ZOHO, raw.id)
    if raw_contacts is not None:
        contacts_in = list(raw_contacts)
    elif raw.contact is not None:
        contacts_in = [raw.contact]
    elif raw.contact_name and raw.contact_name.id and raw.contact_name.name:
        # Lookup without a matching row in the contacts collection
        contacts_in = [ZohoContact(id=raw.contact_name.id, Full_Name=raw.contact_name.name)]
    else:
        contacts_in = []
    contacts = _contacts(contacts_in, deal_id, single=True)
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.ZOHO,
        external_id=raw.id,
        title=raw.deal_name,
        company_name=raw.account_name.name if raw.account_name else None,
        value_amount=raw.amount,
        value_currency=raw.currency or DEFAULT_CURRENCY,
        stage=map_stage_by_name(raw.stage, ZOHO_STAGES),
        close_date=raw.closing_date,
        probability=_to_probability(raw.probability),
        next_steps=dedupe([*_text_list(raw.next_step), *DEFAULT_NEXT_STEPS]),
        contacts=contacts,
    )


@_normalize.register
def _(raw: FolkPerson, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    deal_id = deal_id_for(Provider.FOLK, raw.id)
    fields = raw.group_fields()
    company = raw.companies[0].name if raw.companies and raw.companies[0].name else None
    name = raw.full_name or _full_name(raw.first_name, raw.last_name)
    title = f"{name} ({company})" if name and company else (name or company)

    # The person is the contact
    contact = CanonicalContact(
        id=contact_id_for(deal_id, raw.id),
        deal_id=deal_id,
        external_id=raw.id,
        name=name or "Unknown Contact",
        email=raw.emails[0] if raw.emails else None,
        phone=raw.phones[0] if raw.phones else None,
        role=raw.job_title,
        is_primary=True,
    )
    status = fields.get("Status")
    next_step = fields.get("Next steps")
    lost_reason = fields.get("Lost reason")
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.FOLK,
        external_id=raw.id,
        title=title,
        company_name=company,
        value_amount=_to_float(fields.get("Deal value")),
        value_currency=DEFAULT_CURRENCY,
        stage=map_stage_by_name(status if isinstance(status, str) else None, FOLK_STAGES),
        close_date=_to_date(fields.get("Closed date")),
        pain_points=_text_list(lost_reason if isinstance(lost_reason, str) else None),
        next_steps=_text_list(next_step if isinstance(next_step, str) else None)
        or list(DEFAULT_NEXT_STEPS),
        contacts=[contact],
    )


@_normalize.register
def _(raw: GmailThread, raw_contacts: Optional[Sequence[RawContact]]) -> CanonicalDeal:
    """A thread is a prospective deal with the sender's company."""
    deal_id = deal_id_for(Provider.GMAIL, raw.thread_id)
    domain = raw.from_email.rsplit("@", 1)[1] if raw.from_email and "@" in raw.from_email else None
    contacts: list[CanonicalContact] = []
    if raw.from_email:
        contacts.append(
            CanonicalContact(
                id=contact_id_for(deal_id, raw.from_email),
                deal_id=deal_id,
                external_id=raw.from_email,
                name=raw.from_name or raw.from_email,
                email=raw.from_email,
                is_primary=True,
            )
        )
    return CanonicalDeal(
        id=deal_id,
        provider=Provider.GMAIL,
        external_id=raw.thread_id,
        title=raw.subject,
        company_name=domain,
        stage=DealStage.INTERESTED,
        contacts=contacts,
    )


def normalize(
    provider: Provider | str,
    raw_deal: RawDeal,
    raw_contacts: Optional[Sequence[RawContact]] = None,
) -> CanonicalDeal:
    """
    Map one raw provider deal to a CanonicalDeal.

    Args:
        provider: Provider the record came from; must match the raw type.
        raw_deal: Validated raw record.
        raw_contacts: Contacts to attach. Defaults to the contacts the
            adapter already joined onto ``raw_deal``.
    """
    provider = Provider(provider)
    deal = _normalize(raw_deal, raw_contacts)
    if deal.provider is not provider:
        raise ValueError(
            f"{type(raw_deal).__name__} records belong to {deal.provider.value}, not {provider.value}"
        )
    return deal
