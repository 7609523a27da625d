"""Dunning process and analytics API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from dunning.core.auth import (
    ROLE_ADMIN,
    ROLE_FINANCE,
    ROLE_SUPPORT,
    ROLE_SYSTEM,
    Operator,
    get_current_organization,
    require_roles,
)
from dunning.core.database import get_db
from dunning.schemas.dunning import AnalyticsResponse, ProcessRequest, ProcessResponse
from dunning.services.dunning_service import DunningService
from dunning.services.gateway import GatewayAdapter, get_gateway
from dunning.services.metrics_service import MetricsService
from dunning.services.notification_dispatcher import NotificationDispatcher, get_dispatcher

router = APIRouter()


@router.post(
    "/process",
    response_model=ProcessResponse,
    summary="Run dunning campaigns",
    responses={
        400: {"description": "Campaign is not active"},
        403: {"description": "Operator lacks the ADMIN or SYSTEM role"},
        404: {"description": "Campaign not found"},
    },
)
async def process_dunning(
    data: ProcessRequest | None = None,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(require_roles(ROLE_ADMIN, ROLE_SYSTEM)),
    gateway: GatewayAdapter = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ProcessResponse:
    """Evaluate active campaigns and execute (or, in a dry run, list) due steps."""
    data = data or ProcessRequest()
    service = DunningService(db, gateway, dispatcher)
    result = await service.process(
        organization_id,
        operator,
        campaign_id=data.campaign_id,
        dry_run=data.dry_run,
    )
    return ProcessResponse(**result)


@router.get(
    "/analytics",
    response_model=AnalyticsResponse,
    summary="Recovery analytics",
    responses={
        400: {"description": "Invalid period"},
        403: {"description": "Operator lacks a reporting role"},
    },
)
async def get_dunning_analytics(
    period: str = Query(default="30d"),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(require_roles(ROLE_ADMIN, ROLE_FINANCE, ROLE_SUPPORT)),
) -> AnalyticsResponse:
    """Recovery rate, amounts and top campaigns over a rolling window."""
    return AnalyticsResponse(**MetricsService(db).analytics(organization_id, period))
