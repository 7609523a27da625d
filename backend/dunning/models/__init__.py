from dunning.models.audit_log import AuditLog
from dunning.models.customer import AccessLevel, Customer
from dunning.models.dunning_campaign import (
    CampaignStatus,
    CampaignType,
    DelayAnchor,
    DunningCampaign,
)
from dunning.models.dunning_campaign_execution import DunningCampaignExecution
from dunning.models.dunning_campaign_step import DunningCampaignStep, EscalationLevel, StepAction
from dunning.models.failed_payment import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FailedPayment,
    FailedPaymentStatus,
    RecoveryMethod,
)
from dunning.models.failed_payment_attempt import FailedPaymentAttempt
from dunning.models.organization import Organization
from dunning.models.payment import Payment, PaymentKind, PaymentStatus
from dunning.models.payment_method import PaymentMethod
from dunning.models.subscription import Subscription, SubscriptionPaymentStatus, SubscriptionStatus

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "AccessLevel",
    "AuditLog",
    "CampaignStatus",
    "CampaignType",
    "Customer",
    "DelayAnchor",
    "DunningCampaign",
    "DunningCampaignExecution",
    "DunningCampaignStep",
    "EscalationLevel",
    "FailedPayment",
    "FailedPaymentAttempt",
    "FailedPaymentStatus",
    "Organization",
    "Payment",
    "PaymentKind",
    "PaymentMethod",
    "PaymentStatus",
    "RecoveryMethod",
    "StepAction",
    "Subscription",
    "SubscriptionPaymentStatus",
    "SubscriptionStatus",
]
