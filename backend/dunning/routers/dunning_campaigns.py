"""DunningCampaign API endpoints."""

import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from dunning.core.auth import ROLE_ADMIN, ROLE_FINANCE, Operator, get_current_organization, require_roles
from dunning.core.database import get_db
from dunning.models.dunning_campaign import CampaignStatus, CampaignType, DunningCampaign
from dunning.schemas.dunning_campaign import (
    AggregateCampaignMetrics,
    CampaignMetrics,
    DunningCampaignCreate,
    DunningCampaignExecutionResponse,
    DunningCampaignListResponse,
    DunningCampaignResponse,
    DunningCampaignStepResponse,
    DunningCampaignUpdate,
    Pagination,
)
from dunning.services.campaign_service import CampaignService
from dunning.services.metrics_service import MetricsService

router = APIRouter()

campaign_operator = require_roles(ROLE_ADMIN, ROLE_FINANCE)


def build_pagination(total: int, page: int, limit: int) -> Pagination:
    total_pages = math.ceil(total / limit) if total else 0
    return Pagination(
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def _campaign_to_response(
    campaign: DunningCampaign,
    service: CampaignService,
    metrics: dict | None = None,
    include_executions: bool = False,
) -> DunningCampaignResponse:
    """Build a DunningCampaignResponse with its schedule loaded."""
    campaign_id: UUID = campaign.id  # type: ignore[assignment]
    resp = DunningCampaignResponse.model_validate(campaign)
    resp.retry_schedule = [
        DunningCampaignStepResponse.model_validate(s) for s in service.repo.get_steps(campaign_id)
    ]
    if metrics is not None:
        resp.metrics = CampaignMetrics(**metrics)
    if include_executions:
        resp.executions = [
            DunningCampaignExecutionResponse.model_validate(e)
            for e in service.repo.get_executions(campaign_id)
        ]
    return resp


@router.post(
    "/",
    response_model=DunningCampaignResponse,
    status_code=201,
    summary="Create dunning campaign",
    responses={
        400: {"description": "Invalid campaign definition"},
        403: {"description": "Operator lacks the ADMIN or FINANCE role"},
        409: {"description": "Dunning campaign with this name already exists"},
    },
)
async def create_dunning_campaign(
    data: DunningCampaignCreate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(campaign_operator),
) -> DunningCampaignResponse:
    """Create a new dunning campaign."""
    service = CampaignService(db)
    campaign = service.create_campaign(data, organization_id, operator)
    return _campaign_to_response(campaign, service)


@router.get(
    "/",
    response_model=DunningCampaignListResponse,
    summary="List dunning campaigns",
    responses={403: {"description": "Operator lacks the ADMIN or FINANCE role"}},
)
async def list_dunning_campaigns(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: CampaignStatus | None = None,
    type: CampaignType | None = None,
    search: str | None = Query(default=None, max_length=100),
    order_by: str | None = None,
    include_metrics: bool = False,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(campaign_operator),
) -> DunningCampaignListResponse:
    """List dunning campaigns with filters and optional recovery metrics."""
    service = CampaignService(db)
    campaigns, total = service.list_campaigns(
        organization_id,
        page=page,
        limit=limit,
        status=status.value if status else None,
        campaign_type=type.value if type else None,
        search=search,
        order_by=order_by,
    )

    aggregate = None
    responses = []
    if include_metrics:
        metrics_service = MetricsService(db)
        all_metrics = []
        for campaign in campaigns:
            metrics = metrics_service.campaign_metrics(campaign)
            all_metrics.append(metrics)
            responses.append(_campaign_to_response(campaign, service, metrics))
        aggregate = AggregateCampaignMetrics(**metrics_service.aggregate(all_metrics))
    else:
        responses = [_campaign_to_response(c, service) for c in campaigns]

    return DunningCampaignListResponse(
        campaigns=responses,
        pagination=build_pagination(total, page, limit),
        aggregate_metrics=aggregate,
    )


@router.get(
    "/{campaign_id}",
    response_model=DunningCampaignResponse,
    summary="Get dunning campaign",
    responses={
        403: {"description": "Operator lacks the ADMIN or FINANCE role"},
        404: {"description": "Dunning campaign not found"},
    },
)
async def get_dunning_campaign(
    campaign_id: UUID,
    include_metrics: bool = False,
    include_executions: bool = False,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(campaign_operator),
) -> DunningCampaignResponse:
    """Get a dunning campaign by ID."""
    service = CampaignService(db)
    campaign = service.get_campaign(campaign_id, organization_id)
    metrics = MetricsService(db).campaign_metrics(campaign) if include_metrics else None
    return _campaign_to_response(campaign, service, metrics, include_executions)


@router.put(
    "/{campaign_id}",
    response_model=DunningCampaignResponse,
    summary="Update dunning campaign",
    responses={
        400: {"description": "Invalid campaign definition"},
        403: {"description": "Operator lacks the ADMIN or FINANCE role"},
        404: {"description": "Dunning campaign not found"},
        409: {"description": "Dunning campaign with this name already exists"},
    },
)
async def update_dunning_campaign(
    campaign_id: UUID,
    data: DunningCampaignUpdate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(campaign_operator),
) -> DunningCampaignResponse:
    """Update a dunning campaign."""
    service = CampaignService(db)
    campaign = service.update_campaign(campaign_id, data, organization_id, operator)
    return _campaign_to_response(campaign, service)
