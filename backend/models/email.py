"""
Email model - Gmail messages ingested by the mailbox sync.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import ARRAY, DateTime, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Email(Base):
    """One stored Gmail message."""

    __tablename__ = "emails"
    __table_args__ = (
        UniqueConstraint("account_id", "gmail_id", name="uq_emails_account_gmail_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    gmail_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    from_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    from_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_emails: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    cc_emails: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    labels: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "gmail_id": self.gmail_id,
            "thread_id": self.thread_id,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "to_emails": list(self.to_emails or []),
            "subject": self.subject,
            "snippet": self.snippet,
            "received_at": self.received_at.isoformat() if self.received_at else None,
        }
