"""
Deals endpoints for canonical deal data.

Endpoints:
- GET /api/deals/{account_id} - List canonical deals (optionally by provider)
- POST /api/deals/dedupe - Fuzzy-deduplicate a list of strings
- POST /api/deals/{account_id}/cleanup-duplicates - Re-dedupe stored deals
- POST /api/deals/{account_id}/{deal_id}/analysis - Merge analysis into a deal
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from connectors.models import CanonicalDeal
from services import integrations as integration_service

router = APIRouter()
logger = logging.getLogger(__name__)


class DealListResponse(BaseModel):
    """Response model for listing deals."""

    deals: list[CanonicalDeal]
    total: int


class DedupeRequest(BaseModel):
    items: list[str] = Field(default_factory=list)


class DedupeResponse(BaseModel):
    items: list[str]
    removed: int


class CleanupResponse(BaseModel):
    """Response model for the duplicate cleanup."""

    status: str
    processed: int
    updated: int


class AnalysisRequest(BaseModel):
    """Analysis output to merge, and/or notes to analyze first."""

    pain_points: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    context: Optional[str] = None


@router.post("/dedupe", response_model=DedupeResponse)
async def dedupe_items(request: DedupeRequest) -> DedupeResponse:
    items = integration_service.dedupe(request.items)
    return DedupeResponse(items=items, removed=len(request.items) - len(items))


@router.get("/{account_id}", response_model=DealListResponse)
async def list_deals(
    account_id: str,
    provider: Optional[str] = Query(None, description="Only deals from this provider"),
) -> DealListResponse:
    deals = await integration_service.list_canonical_deals(account_id, provider)
    return DealListResponse(deals=deals, total=len(deals))


@router.post("/{account_id}/cleanup-duplicates", response_model=CleanupResponse)
async def cleanup_duplicates(account_id: str) -> CleanupResponse:
    """Deduplicate pain points and next steps across every stored deal."""
    counts = await integration_service.cleanup_duplicates(account_id)
    return CleanupResponse(status="completed", processed=counts["processed"], updated=counts["updated"])


@router.post("/{account_id}/{deal_id}/analysis", response_model=CanonicalDeal)
async def apply_analysis(account_id: str, deal_id: str, request: AnalysisRequest) -> CanonicalDeal:
    try:
        UUID(deal_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Deal not found")

    deal = await integration_service.apply_deal_analysis(
        account_id,
        deal_id,
        pain_points=request.pain_points,
        next_steps=request.next_steps,
        context=request.context,
    )
    if deal is None:
        raise HTTPException(status_code=404, detail="Deal not found")
    return deal
