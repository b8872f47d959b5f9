"""
Sync watermark model - resumption point and run status per connection.

Status moves idle -> in_progress -> completed | failed, and back to
in_progress on the next run.  Only one run may hold ``in_progress`` for a
key; acquisition is a conditional UPDATE (see services.sync_watermarks).
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base

SYNC_STATUSES: tuple[str, ...] = ("idle", "in_progress", "completed", "failed")


class SyncWatermark(Base):
    """Per-(account, provider) sync state."""

    __tablename__ = "sync_watermarks"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_sync_watermarks_account_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Opaque continuation token from the adapter; NULL = start from page 1
    cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Start of the run that began from page 1; resumed runs inherit it
    window_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Window start of the last run that exhausted every page
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # in_progress rows older than this are considered abandoned
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    records_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "account_id": self.account_id,
            "provider": self.provider,
            "status": self.status,
            "cursor": self.cursor,
            "started_at": to_iso8601(self.started_at),
            "last_run_at": to_iso8601(self.last_run_at),
            "last_completed_at": to_iso8601(self.last_completed_at),
            "records_synced": self.records_synced,
            "error_message": self.error_message,
            "error_kind": self.error_kind,
            "needs_reconnect": self.error_kind == "needs_reconnect",
        }
