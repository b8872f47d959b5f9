"""
Deal model - canonical representation of opportunities from every provider.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import ARRAY, Date, DateTime, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Deal(Base):
    """Deal model representing sales opportunities."""

    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_deals_account_provider_external"),
    )

    # Deterministic (uuid5 of provider + external id), assigned by the normalizer.
    # Only unique within an account, hence the composite key.
    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    value_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    value_currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    # interested | contacted | demo | proposal | negotiation | won | lost
    stage: Mapped[str] = mapped_column(String(50), nullable=False, default="interested")
    close_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    probability: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Always deduplicated before write
    pain_points: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)
    next_steps: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "external_id": self.external_id,
            "title": self.title,
            "company_name": self.company_name,
            "value_amount": float(self.value_amount) if self.value_amount is not None else None,
            "value_currency": self.value_currency,
            "stage": self.stage,
            "close_date": self.close_date.isoformat() if self.close_date else None,
            "probability": self.probability,
            "pain_points": list(self.pain_points or []),
            "next_steps": list(self.next_steps or []),
        }
