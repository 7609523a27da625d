from dunning.schemas.audit_log import AuditLogResponse
from dunning.schemas.dunning import (
    AnalyticsResponse,
    CampaignProcessResult,
    PlannedAction,
    ProcessError,
    ProcessRequest,
    ProcessResponse,
    RecoveryMetrics,
)
from dunning.schemas.dunning_campaign import (
    CampaignMetrics,
    DunningCampaignCreate,
    DunningCampaignListResponse,
    DunningCampaignResponse,
    DunningCampaignStepCreate,
    DunningCampaignUpdate,
    TriggerConditions,
)
from dunning.schemas.failed_payment import (
    AbandonRequest,
    AbandonResponse,
    BulkRetryRequest,
    BulkRetryResponse,
    FailedPaymentCreate,
    FailedPaymentDetailResponse,
    FailedPaymentListResponse,
    FailedPaymentResponse,
    RetryRequest,
    RetryResponse,
)

__all__ = [
    "AbandonRequest",
    "AbandonResponse",
    "AnalyticsResponse",
    "AuditLogResponse",
    "BulkRetryRequest",
    "BulkRetryResponse",
    "CampaignMetrics",
    "CampaignProcessResult",
    "DunningCampaignCreate",
    "DunningCampaignListResponse",
    "DunningCampaignResponse",
    "DunningCampaignStepCreate",
    "DunningCampaignUpdate",
    "FailedPaymentCreate",
    "FailedPaymentDetailResponse",
    "FailedPaymentListResponse",
    "FailedPaymentResponse",
    "PlannedAction",
    "ProcessError",
    "ProcessRequest",
    "ProcessResponse",
    "RecoveryMetrics",
    "RetryRequest",
    "RetryResponse",
    "TriggerConditions",
]
