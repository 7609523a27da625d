"""FailedPayment schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dunning.schemas.dunning_campaign import REQUEST_CONFIG, Pagination


class FailedPaymentCreate(BaseModel):
    """A payment-failure event reported by the billing system."""

    model_config = REQUEST_CONFIG

    customer_id: UUID
    subscription_id: UUID | None = None
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    failure_reason: str | None = Field(default=None, max_length=255)
    error_code: str | None = Field(default=None, max_length=100)
    original_payment_id: str | None = Field(default=None, max_length=255)
    failure_count: int = Field(default=1, ge=1)
    payment_method_id: str | None = Field(default=None, max_length=255)
    failed_at: datetime | None = None


class RetryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    attempted_at: datetime
    action: str
    amount: Decimal
    payment_method_id: str | None = None
    success: bool
    failure_reason: str | None = None
    error_code: str | None = None
    provider_payment_id: str | None = None
    campaign_step: int | None = None
    retried_by: str | None = None
    reason: str | None = None
    bulk_retry: bool = False


class FailedPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    customer_id: UUID
    subscription_id: UUID | None = None
    dunning_campaign_id: UUID | None = None
    amount: Decimal
    currency: str
    status: str
    failure_reason: str | None = None
    error_code: str | None = None
    original_payment_id: str | None = None
    failure_count: int
    payment_method_id: str | None = None
    retry_attempts: int
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    recovered_at: datetime | None = None
    recovered_payment_id: UUID | None = None
    recovery_method: str | None = None
    recovered_by: str | None = None
    abandoned_at: datetime | None = None
    abandonment_reason: str | None = None
    abandoned_by: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime | None = None


class FailedPaymentSummary(BaseModel):
    total_count: int = 0
    total_amount: Decimal = Decimal("0")
    recovered_count: int = 0
    recovered_amount: Decimal = Decimal("0")
    recovery_rate: float = 0.0
    status_distribution: dict[str, int] = Field(default_factory=dict)


class FailedPaymentListResponse(BaseModel):
    failed_payments: list[FailedPaymentResponse]
    pagination: Pagination
    summary: FailedPaymentSummary | None = None


class TimelineEvent(BaseModel):
    timestamp: datetime
    event: str
    description: str
    amount: Decimal | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class CustomerSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None = None
    access_level: str
    subscription_status: str


class SubscriptionSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_code: str
    status: str
    payment_status: str


class FailedPaymentDetailResponse(BaseModel):
    failed_payment: FailedPaymentResponse
    retry_history: list[RetryAttemptResponse]
    timeline: list[TimelineEvent]
    customer: CustomerSnapshot | None = None
    subscription: SubscriptionSnapshot | None = None
    campaign_name: str | None = None


class RetryRequest(BaseModel):
    """Manual retry of a single failed payment."""

    model_config = REQUEST_CONFIG

    payment_method_id: str | None = Field(default=None, max_length=255)
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    reason: str | None = Field(default=None, max_length=500)
    update_payment_method: bool = False
    send_notification: bool = False


class RetryResult(BaseModel):
    success: bool
    failure_reason: str | None = None
    error_code: str | None = None
    attempt: int


class RecoveredPaymentInfo(BaseModel):
    id: UUID
    provider_payment_id: str | None = None
    amount: Decimal
    status: str


class RetryResponse(BaseModel):
    success: bool
    message: str
    failed_payment: FailedPaymentResponse
    payment: RecoveredPaymentInfo | None = None
    retry_result: RetryResult


class AbandonRequest(BaseModel):
    model_config = REQUEST_CONFIG

    reason: str = Field(..., min_length=1, max_length=500)
    refund_partial: bool = False
    refund_amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    cancel_subscription: bool = False
    send_notification: bool = False
    internal_notes: str | None = Field(default=None, max_length=2000)


class AbandonActions(BaseModel):
    refund_processed: bool = False
    refund_amount: Decimal = Decimal("0")
    subscription_cancelled: bool = False


class AbandonResponse(BaseModel):
    message: str
    failed_payment: FailedPaymentResponse
    actions: AbandonActions


class BulkRetryRequest(BaseModel):
    model_config = REQUEST_CONFIG

    payment_ids: list[UUID] = Field(..., min_length=1, max_length=1000)
    batch_size: int = Field(default=10, ge=1, le=50)
    delay_between_batches: float = Field(default=5.0, ge=0, le=300)
    reason: str | None = Field(default=None, max_length=500)
    campaign_id: UUID | None = None


class BulkRetryItemResult(BaseModel):
    payment_id: UUID
    success: bool
    status: str | None = None
    amount: Decimal | None = None
    batch: int
    failure_reason: str | None = None
    error_code: str | None = None
    error: str | None = None
    message: str | None = None


class BulkRetryError(BaseModel):
    payment_id: UUID
    code: str
    message: str


class BulkRetrySummary(BaseModel):
    total: int
    successful: int
    failed: int
    skipped: int
    success_rate: float
    total_recovered_amount: Decimal
    batches: int


class BulkRetryResponse(BaseModel):
    message: str
    summary: BulkRetrySummary
    results: list[BulkRetryItemResult]
    errors: list[BulkRetryError]
