"""DunningCampaign schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dunning.models.dunning_campaign import CampaignStatus, CampaignType, DelayAnchor
from dunning.models.dunning_campaign_step import EscalationLevel, StepAction

# Request bodies accept both snake_case and camelCase keys.
REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TriggerConditions(BaseModel):
    """Eligibility predicate of a campaign."""

    model_config = REQUEST_CONFIG

    min_failure_count: int = Field(default=0, ge=0)
    min_days_since_failure: int = Field(default=0, ge=0)
    amount_threshold: Decimal = Field(default=Decimal("0"), ge=0)
    exclude_trial_users: bool = False
    plan_whitelist: list[str] = Field(default_factory=list)


class EmailTemplate(BaseModel):
    model_config = REQUEST_CONFIG

    subject: str = Field(..., min_length=1, max_length=255)
    html_body: str = Field(..., min_length=1)
    text_body: str | None = None


class SmsTemplate(BaseModel):
    model_config = REQUEST_CONFIG

    message: str = Field(..., min_length=1)
    max_length: int = Field(default=160, ge=1, le=1600)


class WebhookConfig(BaseModel):
    model_config = REQUEST_CONFIG

    url: str = Field(..., pattern=r"^https?://")
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str | None = None


class DunningCampaignStepCreate(BaseModel):
    """Schema for one retry schedule entry.

    ``step_number`` may be omitted; it is then assigned from the position.
    """

    model_config = REQUEST_CONFIG

    step_number: int | None = Field(default=None, ge=1)
    delay_days: int = Field(..., ge=0)
    action: StepAction
    escalation_level: EscalationLevel = EscalationLevel.MEDIUM


class DunningCampaignStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_number: int
    delay_days: int
    action: str
    escalation_level: str


class DunningCampaignCreate(BaseModel):
    """Schema for creating a dunning campaign."""

    model_config = REQUEST_CONFIG

    name: str = Field(..., min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    type: CampaignType
    trigger_conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    retry_schedule: list[DunningCampaignStepCreate] = Field(..., min_length=1, max_length=10)
    email_template: EmailTemplate | None = None
    sms_template: SmsTemplate | None = None
    webhook_config: WebhookConfig | None = None
    active: bool = False
    priority: int = Field(default=5, ge=1, le=10)
    delay_anchor: DelayAnchor = DelayAnchor.LAST_ATTEMPT
    tags: list[str] = Field(default_factory=list)


class DunningCampaignUpdate(BaseModel):
    """Schema for updating a dunning campaign. Omitted fields are unchanged."""

    model_config = REQUEST_CONFIG

    name: str | None = Field(default=None, min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    type: CampaignType | None = None
    trigger_conditions: TriggerConditions | None = None
    retry_schedule: list[DunningCampaignStepCreate] | None = Field(
        default=None, min_length=1, max_length=10
    )
    email_template: EmailTemplate | None = None
    sms_template: SmsTemplate | None = None
    webhook_config: WebhookConfig | None = None
    status: CampaignStatus | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    delay_anchor: DelayAnchor | None = None
    tags: list[str] | None = None


class CampaignMetrics(BaseModel):
    """Recovery statistics derived from a campaign's failed payments."""

    campaign_id: UUID
    campaign_name: str | None = None
    total_executions: int = 0
    total_failed_payments: int = 0
    active_payments: int = 0
    recovered_count: int = 0
    recovered_amount: Decimal = Decimal("0")
    abandoned_count: int = 0
    success_rate: float = 0.0
    average_recovery_time_hours: float | None = None
    last_execution_at: datetime | None = None


class AggregateCampaignMetrics(BaseModel):
    total_executions: int = 0
    total_failed_payments: int = 0
    total_recovered_payments: int = 0
    total_recovered_amount: Decimal = Decimal("0")
    overall_success_rate: float = 0.0


class DunningCampaignExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    dunning_campaign_id: UUID
    dry_run: bool
    payments_evaluated: int
    payments_processed: int
    retries_attempted: int
    payments_recovered: int
    recovered_amount: Decimal
    emails_sent: int
    sms_sent: int
    subscriptions_cancelled: int
    payments_abandoned: int
    errors: list[dict[str, str | None]]
    started_at: datetime
    finished_at: datetime | None = None


class DunningCampaignResponse(BaseModel):
    """Schema for dunning campaign response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    description: str | None = None
    type: str
    status: str
    priority: int
    delay_anchor: str
    trigger_conditions: dict[str, object]
    templates: dict[str, dict[str, object]]
    webhook_config: dict[str, object] | None = None
    tags: list[str]
    retry_schedule: list[DunningCampaignStepResponse] = Field(default_factory=list)
    metrics: CampaignMetrics | None = None
    executions: list[DunningCampaignExecutionResponse] | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class DunningCampaignListResponse(BaseModel):
    campaigns: list[DunningCampaignResponse]
    pagination: Pagination
    aggregate_metrics: AggregateCampaignMetrics | None = None
