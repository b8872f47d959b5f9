"""
Sync trigger endpoints for all integrations.

Endpoints:
- POST /api/sync/{account_id}/{provider} - Run a sync for one connection
- GET /api/sync/{account_id}/{provider}/status - Get sync status
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from services import integrations as integration_service
from services.sync_watermarks import WatermarkStore

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncStatusResponse(BaseModel):
    """Response model for sync status."""

    account_id: str
    provider: str
    status: str
    started_at: Optional[str]
    last_run_at: Optional[str]
    last_completed_at: Optional[str]
    records_synced: int
    error: Optional[str]
    error_kind: Optional[str]
    needs_reconnect: bool


class SyncTriggerResponse(BaseModel):
    """Response model for sync trigger."""

    status: str
    account_id: str
    provider: str
    records_synced: int
    skipped: int
    exhausted: bool
    error: Optional[str]
    error_kind: Optional[str]
    needs_reconnect: bool


@router.post("/{account_id}/{provider}", response_model=SyncTriggerResponse)
async def trigger_sync(account_id: str, provider: str) -> SyncTriggerResponse:
    """
    Run a sync for one connection and report how it ended.

    Returns 409 while another run for the same connection is in progress.
    A run that fails with a provider error still returns 200; the outcome
    is in ``status`` / ``error_kind``.
    """
    result = await integration_service.run_sync(account_id, provider)
    return SyncTriggerResponse(
        status=result.status,
        account_id=account_id,
        provider=result.provider,
        records_synced=result.records_synced,
        skipped=result.skipped,
        exhausted=result.exhausted,
        error=result.error,
        error_kind=result.error_kind,
        needs_reconnect=result.needs_reconnect,
    )


@router.get("/{account_id}/{provider}/status", response_model=SyncStatusResponse)
async def get_sync_status(account_id: str, provider: str) -> SyncStatusResponse:
    """Get the stored sync status for a connection."""
    try:
        watermark = await WatermarkStore().get(account_id, provider)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")
    if watermark is None:
        return SyncStatusResponse(
            account_id=account_id,
            provider=provider,
            status="idle",
            started_at=None,
            last_run_at=None,
            last_completed_at=None,
            records_synced=0,
            error=None,
            error_kind=None,
            needs_reconnect=False,
        )
    data = watermark.to_dict()
    return SyncStatusResponse(
        account_id=account_id,
        provider=watermark.provider,
        status=data["status"],
        started_at=data["started_at"],
        last_run_at=data["last_run_at"],
        last_completed_at=data["last_completed_at"],
        records_synced=data["records_synced"],
        error=data["error_message"],
        error_kind=data["error_kind"],
        needs_reconnect=data["needs_reconnect"],
    )
