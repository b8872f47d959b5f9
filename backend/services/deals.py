"""
Deal persistence: canonical deals in, ``deals`` / ``deal_contacts`` rows out.

Re-syncing a deal is a partial update: only fields the provider actually
sent overwrite what is stored, and the text-list fields (pain points, next
steps) are merged with the stored lists and deduplicated so repeated syncs
and analyses never accumulate near-duplicates.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Optional, Sequence
import uuid

from sqlalchemy import and_, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.models import CanonicalContact, CanonicalDeal, DealStage, Provider
from models.contact import DealContact
from models.database import get_session
from models.deal import Deal
from services.credentials import SessionFactory
from services.deduplication import dedupe_next_steps, dedupe_pain_points, merge_and_dedupe

logger = logging.getLogger(__name__)

# Scalar fields a sync may overwrite when the provider sends a value
_SCALAR_FIELDS: tuple[str, ...] = (
    "title",
    "company_name",
    "value_amount",
    "value_currency",
    "stage",
    "close_date",
    "probability",
)
_LIST_FIELDS: tuple[str, ...] = ("pain_points", "next_steps")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def merge_deal_fields(existing: Optional[dict[str, Any]], incoming: dict[str, Any]) -> dict[str, Any]:
    """Combine a stored deal row with freshly normalized values.

    Empty incoming values never erase stored ones; list fields are merged
    with :func:`merge_and_dedupe`.
    """
    if existing is None:
        merged = dict(incoming)
        for field_name in _LIST_FIELDS:
            merged[field_name] = merge_and_dedupe([], incoming.get(field_name))
        return merged

    merged = dict(existing)
    for field_name in _SCALAR_FIELDS:
        value = incoming.get(field_name)
        if not _is_empty(value):
            merged[field_name] = value
    for field_name in _LIST_FIELDS:
        merged[field_name] = merge_and_dedupe(existing.get(field_name), incoming.get(field_name))
    return merged


def _deal_values(account_id: str, deal: CanonicalDeal) -> dict[str, Any]:
    return {
        "id": uuid.UUID(deal.id),
        "account_id": account_id,
        "provider": deal.provider.value,
        "external_id": deal.external_id,
        "title": deal.title,
        "company_name": deal.company_name,
        "value_amount": Decimal(str(deal.value_amount)) if deal.value_amount is not None else None,
        "value_currency": deal.value_currency,
        "stage": deal.stage.value,
        "close_date": deal.close_date,
        "probability": deal.probability,
        "pain_points": list(deal.pain_points),
        "next_steps": list(deal.next_steps),
    }


def _stored_values(row: Deal) -> dict[str, Any]:
    return {
        "id": row.id,
        "account_id": row.account_id,
        "provider": row.provider,
        "external_id": row.external_id,
        "title": row.title,
        "company_name": row.company_name,
        "value_amount": row.value_amount,
        "value_currency": row.value_currency,
        "stage": row.stage,
        "close_date": row.close_date,
        "probability": row.probability,
        "pain_points": list(row.pain_points or []),
        "next_steps": list(row.next_steps or []),
    }


def _contact_values(account_id: str, contact: CanonicalContact, now: datetime) -> dict[str, Any]:
    return {
        "id": uuid.UUID(contact.id),
        "deal_id": uuid.UUID(contact.deal_id),
        "account_id": account_id,
        "external_id": contact.external_id,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "role": contact.role,
        "is_primary": contact.is_primary,
        "is_decision_maker": contact.is_decision_maker,
        "synced_at": now,
    }


def to_canonical(row: Deal, contacts: Sequence[DealContact] = ()) -> CanonicalDeal:
    """Rebuild a CanonicalDeal from stored rows."""
    return CanonicalDeal(
        id=str(row.id),
        provider=Provider(row.provider),
        external_id=row.external_id,
        title=row.title,
        company_name=row.company_name,
        value_amount=float(row.value_amount) if row.value_amount is not None else None,
        value_currency=row.value_currency,
        stage=DealStage(row.stage),
        close_date=row.close_date,
        probability=row.probability,
        pain_points=list(row.pain_points or []),
        next_steps=list(row.next_steps or []),
        contacts=[
            CanonicalContact(
                id=str(c.id),
                deal_id=str(c.deal_id),
                external_id=c.external_id,
                name=c.name,
                email=c.email,
                phone=c.phone,
                role=c.role,
                is_primary=c.is_primary,
                is_decision_maker=c.is_decision_maker,
            )
            for c in sorted(contacts, key=lambda c: (not c.is_primary, c.name))
        ],
    )


class DealRepository:
    """Upserts and reads canonical deals for an account."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    async def upsert_deals(self, account_id: str, deals: Sequence[CanonicalDeal]) -> int:
        """Write a batch of canonical deals and their contacts; returns the deal count."""
        if not deals:
            return 0
        now = datetime.utcnow()
        incoming = {uuid.UUID(d.id): _deal_values(account_id, d) for d in deals}

        async with self._session_factory() as session:
            result = await session.execute(select(Deal).where(Deal.account_id == account_id, Deal.id.in_(list(incoming))))
            existing = {row.id: _stored_values(row) for row in result.scalars().all()}

            rows: list[dict[str, Any]] = []
            for deal_id, values in incoming.items():
                merged = merge_deal_fields(existing.get(deal_id), values)
                merged["synced_at"] = now
                if deal_id not in existing:
                    merged["created_at"] = now
                rows.append(merged)

            for row in rows:
                stmt = pg_insert(Deal.__table__).values(row)
                update_cols = {
                    col: getattr(stmt.excluded, col)
                    for col in (*_SCALAR_FIELDS, *_LIST_FIELDS, "synced_at")
                }
                await session.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["account_id", "provider", "external_id"],
                        set_=update_cols,
                    )
                )

            for deal in deals:
                await self._replace_contacts(session, account_id, deal, now)

            await session.commit()

        logger.info(
            "Persisted %d deals for account %s",
            len(rows),
            account_id,
            extra={"account_id": account_id, "new": len(rows) - len(existing)},
        )
        return len(rows)

    async def _replace_contacts(
        self, session: AsyncSession, account_id: str, deal: CanonicalDeal, now: datetime
    ) -> None:
        # An empty list may just mean enrichment failed; keep what we have
        if not deal.contacts:
            return
        deal_uuid = uuid.UUID(deal.id)
        keep_ids = [uuid.UUID(c.id) for c in deal.contacts]
        for contact in deal.contacts:
            stmt = pg_insert(DealContact.__table__).values(_contact_values(account_id, contact, now))
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["account_id", "id"],
                    set_={
                        col: getattr(stmt.excluded, col)
                        for col in (
                            "external_id",
                            "name",
                            "email",
                            "phone",
                            "role",
                            "is_primary",
                            "is_decision_maker",
                            "synced_at",
                        )
                    },
                )
            )
        await session.execute(
            delete(DealContact).where(
                and_(
                    DealContact.account_id == account_id,
                    DealContact.deal_id == deal_uuid,
                    DealContact.id.not_in(keep_ids),
                )
            )
        )

    async def list_canonical_deals(
        self, account_id: str, provider: Optional[Provider | str] = None
    ) -> list[CanonicalDeal]:
        async with self._session_factory() as session:
            query = select(Deal).where(Deal.account_id == account_id)
            if provider is not None:
                query = query.where(Deal.provider == Provider(provider).value)
            query = query.order_by(Deal.created_at.desc(), Deal.id)
            deals = list((await session.execute(query)).scalars().all())
            if not deals:
                return []

            contacts_result = await session.execute(
                select(DealContact).where(
                    DealContact.account_id == account_id,
                    DealContact.deal_id.in_([d.id for d in deals]),
                )
            )
            by_deal: dict[uuid.UUID, list[DealContact]] = {}
            for contact in contacts_result.scalars().all():
                by_deal.setdefault(contact.deal_id, []).append(contact)

        return [to_canonical(d, by_deal.get(d.id, [])) for d in deals]

    async def cleanup_duplicates(self, account_id: str) -> dict[str, int]:
        """Re-deduplicate the text lists of every stored deal for the account."""
        processed = 0
        updated = 0
        async with self._session_factory() as session:
            result = await session.execute(
                select(Deal.id, Deal.pain_points, Deal.next_steps).where(Deal.account_id == account_id)
            )
            for deal_id, pain_points, next_steps in result.all():
                processed += 1
                original_pain = list(pain_points or [])
                original_steps = list(next_steps or [])
                cleaned_pain = dedupe_pain_points(original_pain)
                cleaned_steps = dedupe_next_steps(original_steps)
                if cleaned_pain == original_pain and cleaned_steps == original_steps:
                    continue
                await session.execute(
                    update(Deal)
                    .where(Deal.account_id == account_id, Deal.id == deal_id)
                    .values(pain_points=cleaned_pain, next_steps=cleaned_steps)
                )
                updated += 1
            await session.commit()

        logger.info(
            "Duplicate cleanup finished",
            extra={"account_id": account_id, "processed": processed, "updated": updated},
        )
        return {"processed": processed, "updated": updated}

    async def get_deal(self, account_id: str, deal_id: str) -> Optional[Deal]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Deal).where(Deal.account_id == account_id, Deal.id == uuid.UUID(deal_id))
            )
            return result.scalar_one_or_none()

    async def apply_analysis(
        self, account_id: str, deal_id: str, pain_points: Sequence[str], next_steps: Sequence[str]
    ) -> Optional[Deal]:
        """Merge analysis output into a stored deal; None when the deal does not exist."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Deal).where(Deal.account_id == account_id, Deal.id == uuid.UUID(deal_id))
            )
            deal = result.scalar_one_or_none()
            if deal is None:
                return None
            deal.pain_points = merge_and_dedupe(deal.pain_points, pain_points)
            deal.next_steps = merge_and_dedupe(deal.next_steps, next_steps)
            await session.commit()
            return deal
