"""Schemas for campaign processing runs and recovery analytics."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from dunning.schemas.dunning_campaign import REQUEST_CONFIG, CampaignMetrics


class ProcessRequest(BaseModel):
    model_config = REQUEST_CONFIG

    campaign_id: UUID | None = None
    dry_run: bool = False


class PlannedAction(BaseModel):
    """A step that is due (executed, or only selected in a dry run)."""

    failed_payment_id: UUID
    campaign_id: UUID
    step_number: int
    action: str


class ProcessError(BaseModel):
    code: str
    message: str
    campaign_id: UUID | None = None
    failed_payment_id: UUID | None = None


class CampaignProcessResult(BaseModel):
    campaign_id: UUID
    campaign_name: str
    payments_evaluated: int = 0
    payments_processed: int = 0
    skipped_not_due: int = 0
    retries_attempted: int = 0
    payments_recovered: int = 0
    recovered_amount: Decimal = Decimal("0")
    emails_sent: int = 0
    sms_sent: int = 0
    subscriptions_cancelled: int = 0
    payments_abandoned: int = 0
    planned_actions: list[PlannedAction] = Field(default_factory=list)
    errors: list[ProcessError] = Field(default_factory=list)


class ProcessResponse(BaseModel):
    message: str
    dry_run: bool
    campaigns_processed: int = 0
    payments_processed: int = 0
    retries_attempted: int = 0
    payments_recovered: int = 0
    emails_sent: int = 0
    sms_sent: int = 0
    subscriptions_cancelled: int = 0
    payments_abandoned: int = 0
    campaigns: list[CampaignProcessResult] = Field(default_factory=list)
    errors: list[ProcessError] = Field(default_factory=list)


class DateRange(BaseModel):
    start: datetime
    end: datetime


class RecoveryMetrics(BaseModel):
    total_failed_payments: int = 0
    total_failed_amount: Decimal = Decimal("0")
    recovered_payments: int = 0
    recovered_amount: Decimal = Decimal("0")
    abandoned_payments: int = 0
    active_payments: int = 0
    recovery_rate: float = 0.0
    average_recovery_time_hours: float | None = None


class AnalyticsResponse(BaseModel):
    period: str
    date_range: DateRange
    metrics: RecoveryMetrics
    status_distribution: dict[str, int] = Field(default_factory=dict)
    top_campaigns: list[CampaignMetrics] = Field(default_factory=list)
