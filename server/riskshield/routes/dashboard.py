"""Read-only compliance dashboard endpoints, scoped to one company."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_aggregator
from ..models import (
    ComplianceHistory,
    ComplianceStats,
    ExpiringCertificate,
    FollowUpPreview,
    MorningBrief,
    PendingFollowUp,
    PendingResponse,
    StopWorkRisk,
)
from ..services.aggregation import ComplianceAggregator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{company_id}/compliance-stats", response_model=ComplianceStats)
async def get_compliance_stats(
    company_id: UUID,
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    return await aggregator.get_compliance_stats(company_id)


@router.get("/{company_id}/compliance-history", response_model=ComplianceHistory)
async def get_compliance_history(
    company_id: UUID,
    days: int = Query(30, ge=1, le=365),
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    """Daily compliance counts, oldest first. Records today's row if it is missing."""
    history = await aggregator.get_compliance_history(company_id, days=days)
    return ComplianceHistory(days=days, history=history)


@router.get("/{company_id}/stop-work-risks", response_model=List[StopWorkRisk])
async def get_stop_work_risks(
    company_id: UUID,
    include_exceptions: bool = False,
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    """Assignments that are not compliant and are due on site today or earlier."""
    return await aggregator.get_stop_work_risks(company_id, include_exception_count=include_exceptions)


@router.get("/{company_id}/pending-responses", response_model=List[PendingResponse])
async def get_pending_responses(
    company_id: UUID,
    limit: int = Query(10, ge=1, le=100),
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    return await aggregator.get_pending_responses(company_id, limit=limit)


@router.get("/{company_id}/pending-followups", response_model=List[PendingFollowUp])
async def get_pending_followups(
    company_id: UUID,
    min_days_waiting: float = Query(2, ge=0),
    max_followups: int = Query(10, ge=1, le=100),
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    return await aggregator.get_pending_followups(
        company_id,
        min_days_waiting=min_days_waiting,
        max_followups=max_followups,
    )


@router.get("/{company_id}/followup-preview", response_model=FollowUpPreview)
async def get_followup_preview(
    company_id: UUID,
    min_days_waiting: float = Query(2, ge=0),
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    """Dry run of the follow-up sequence: who would be chased and who is not yet due."""
    return await aggregator.get_followup_preview(company_id, min_days_waiting=min_days_waiting)


@router.get("/{company_id}/expirations", response_model=List[ExpiringCertificate])
async def get_expirations(
    company_id: UUID,
    days_ahead: int = Query(30, ge=0, le=365),
    days_behind: int = Query(0, ge=0, le=365),
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    now = datetime.now(timezone.utc)
    return await aggregator.get_expirations(
        company_id,
        now - timedelta(days=days_behind),
        now + timedelta(days=days_ahead),
        now=now,
    )


@router.get("/{company_id}/morning-brief", response_model=MorningBrief)
async def get_morning_brief(
    company_id: UUID,
    aggregator: ComplianceAggregator = Depends(get_aggregator),
):
    return await aggregator.get_morning_brief(company_id)
