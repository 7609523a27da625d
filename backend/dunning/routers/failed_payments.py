"""FailedPayment API endpoints: listing, intake, retries and abandonment."""

from datetime import datetime
from decimal import Decimal
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
from dunning.models.failed_payment import FailedPaymentStatus
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.routers.dunning_campaigns import build_pagination
from dunning.schemas.failed_payment import (
    AbandonActions,
    AbandonRequest,
    AbandonResponse,
    BulkRetryRequest,
    BulkRetryResponse,
    CustomerSnapshot,
    FailedPaymentCreate,
    FailedPaymentDetailResponse,
    FailedPaymentListResponse,
    FailedPaymentResponse,
    FailedPaymentSummary,
    RecoveredPaymentInfo,
    RetryAttemptResponse,
    RetryRequest,
    RetryResponse,
    RetryResult,
    SubscriptionSnapshot,
    TimelineEvent,
)
from dunning.services.gateway import GatewayAdapter, get_gateway
from dunning.services.notification_dispatcher import NotificationDispatcher, get_dispatcher
from dunning.services.retry_service import RecoveryService

router = APIRouter()

payment_operator = require_roles(ROLE_ADMIN, ROLE_FINANCE, ROLE_SUPPORT)
intake_operator = require_roles(ROLE_ADMIN, ROLE_FINANCE, ROLE_SYSTEM)


@router.get(
    "/",
    response_model=FailedPaymentListResponse,
    summary="List failed payments",
    responses={403: {"description": "Operator lacks a failed-payment role"}},
)
async def list_failed_payments(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: FailedPaymentStatus | None = None,
    campaign_id: UUID | None = None,
    customer_id: UUID | None = None,
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    order_by: str | None = None,
    include_summary: bool = True,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(payment_operator),
) -> FailedPaymentListResponse:
    """List failed payments with filters, pagination and an aggregate summary."""
    service = RecoveryService(db)
    filters = {
        "status": status.value if status else None,
        "campaign_id": campaign_id,
        "customer_id": customer_id,
        "min_amount": min_amount,
        "max_amount": max_amount,
        "start_date": start_date,
        "end_date": end_date,
    }
    payments = service.repo.get_all(
        organization_id, skip=(page - 1) * limit, limit=limit, order_by=order_by, **filters
    )
    total = service.repo.count(organization_id, **filters)
    summary = (
        FailedPaymentSummary(**service.repo.summary(organization_id, **filters))
        if include_summary
        else None
    )
    return FailedPaymentListResponse(
        failed_payments=[FailedPaymentResponse.model_validate(p) for p in payments],
        pagination=build_pagination(total, page, limit),
        summary=summary,
    )


@router.post(
    "/",
    response_model=FailedPaymentResponse,
    status_code=201,
    summary="Record a failed payment",
    responses={
        403: {"description": "Operator lacks an intake role"},
        404: {"description": "Customer or subscription not found"},
    },
)
async def record_failed_payment(
    data: FailedPaymentCreate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(intake_operator),
) -> FailedPaymentResponse:
    """Open a pending failed payment from a billing failure event."""
    service = RecoveryService(db)
    payment = service.record_failure_event(data, organization_id, operator)
    return FailedPaymentResponse.model_validate(payment)


@router.post(
    "/bulk-retry",
    response_model=BulkRetryResponse,
    summary="Retry many failed payments",
    responses={
        400: {"description": "Invalid request"},
        403: {"description": "Operator lacks a failed-payment role"},
        404: {"description": "Campaign not found"},
    },
)
async def bulk_retry_failed_payments(
    data: BulkRetryRequest,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(payment_operator),
    gateway: GatewayAdapter = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> BulkRetryResponse:
    """Retry in rate-limited batches; every id gets its own outcome."""
    service = RecoveryService(db, gateway, dispatcher)
    result = await service.bulk_retry(
        data.payment_ids,
        organization_id,
        operator,
        batch_size=data.batch_size,
        delay_between_batches=data.delay_between_batches,
        reason=data.reason,
        campaign_id=data.campaign_id,
    )
    return BulkRetryResponse(**result)


@router.get(
    "/{failed_payment_id}",
    response_model=FailedPaymentDetailResponse,
    summary="Get failed payment with timeline",
    responses={
        403: {"description": "Operator lacks a failed-payment role"},
        404: {"description": "Failed payment not found"},
    },
)
async def get_failed_payment(
    failed_payment_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(payment_operator),
) -> FailedPaymentDetailResponse:
    """Get a failed payment, its retry history and a reconstructed timeline."""
    service = RecoveryService(db)
    payment = service.get_failed_payment(failed_payment_id, organization_id)
    attempts, events = service.get_timeline(payment)

    customer = service.lifecycle.get_customer(payment)
    subscription = service.lifecycle.get_subscription(payment)
    campaign_name = None
    if payment.dunning_campaign_id is not None:
        campaign = DunningCampaignRepository(db).get_by_id(
            payment.dunning_campaign_id, organization_id
        )
        campaign_name = campaign.name if campaign else None

    return FailedPaymentDetailResponse(
        failed_payment=FailedPaymentResponse.model_validate(payment),
        retry_history=[RetryAttemptResponse.model_validate(a) for a in attempts],
        timeline=[TimelineEvent(**e) for e in events],
        customer=CustomerSnapshot.model_validate(customer) if customer else None,
        subscription=SubscriptionSnapshot.model_validate(subscription) if subscription else None,
        campaign_name=campaign_name,
    )


@router.post(
    "/{failed_payment_id}/retry",
    response_model=RetryResponse,
    summary="Retry a failed payment now",
    responses={
        400: {"description": "No payment method available"},
        403: {"description": "Operator lacks a failed-payment role"},
        404: {"description": "Failed payment not found"},
        409: {"description": "Payment is terminal or being processed concurrently"},
        502: {"description": "Payment gateway unavailable"},
    },
)
async def retry_failed_payment(
    failed_payment_id: UUID,
    data: RetryRequest | None = None,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(payment_operator),
    gateway: GatewayAdapter = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> RetryResponse:
    """Charge immediately, bypassing the campaign delay."""
    service = RecoveryService(db, gateway, dispatcher)
    outcome = await service.retry_payment(failed_payment_id, organization_id, operator, data)

    recovered = None
    if outcome.payment is not None:
        recovered = RecoveredPaymentInfo(
            id=outcome.payment.id,
            provider_payment_id=outcome.payment.provider_payment_id,
            amount=outcome.payment.amount,
            status=outcome.payment.status,
        )
    return RetryResponse(
        success=outcome.success,
        message=(
            "Payment retry successful"
            if outcome.success
            else f"Payment retry failed: {outcome.failure_reason}"
        ),
        failed_payment=FailedPaymentResponse.model_validate(outcome.failed_payment),
        payment=recovered,
        retry_result=RetryResult(
            success=outcome.success,
            failure_reason=outcome.failure_reason,
            error_code=outcome.error_code,
            attempt=outcome.attempt,
        ),
    )


@router.post(
    "/{failed_payment_id}/abandon",
    response_model=AbandonResponse,
    summary="Abandon a failed payment",
    responses={
        400: {"description": "Invalid refund amount"},
        402: {"description": "Refund declined by the gateway"},
        403: {"description": "Operator lacks a failed-payment role"},
        404: {"description": "Failed payment not found"},
        409: {"description": "Payment is terminal or being processed concurrently"},
    },
)
async def abandon_failed_payment(
    failed_payment_id: UUID,
    data: AbandonRequest,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(payment_operator),
    gateway: GatewayAdapter = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AbandonResponse:
    """Stop recovery, optionally refunding part and cancelling the subscription."""
    service = RecoveryService(db, gateway, dispatcher)
    result = await service.abandon_payment(failed_payment_id, organization_id, operator, data)
    return AbandonResponse(
        message=result["message"],
        failed_payment=FailedPaymentResponse.model_validate(result["failed_payment"]),
        actions=AbandonActions(**result["actions"]),
    )
