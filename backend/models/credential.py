"""
Provider credential model.

One row per (account, provider): the OAuth token set (or Folk API key)
plus the tenant base URL and whatever user info the provider returned at
connect time.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import ARRAY, DateTime, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from connectors.models import Credential
from models.database import Base


class ProviderCredential(Base):
    """Stored credential for one provider connection."""

    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_provider_credentials_account_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # 'gmail', 'hubspot', 'pipedrive', 'salesforce', 'zoho', 'folk', 'slack'
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # NULL for non-expiring tokens (Folk API keys, Slack bot tokens)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scope: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    # Tenant base URL (Salesforce instance_url, Zoho api_domain, Pipedrive company domain)
    api_domain: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_credential(self) -> Credential:
        return Credential(
            account_id=self.account_id,
            provider=self.provider,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            scope=list(self.scope or []),
            api_domain=self.api_domain,
            provider_metadata=dict(self.provider_metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Connection summary for API responses (never includes tokens)."""
        return {
            "provider": self.provider,
            "scope": list(self.scope or []),
            "api_domain": self.api_domain,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "provider_metadata": self.provider_metadata,
            "connected_at": self.created_at.isoformat() if self.created_at else None,
        }
