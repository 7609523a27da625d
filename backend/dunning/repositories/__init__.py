from dunning.repositories.audit_log_repository import AuditLogRepository
from dunning.repositories.customer_repository import CustomerRepository
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.repositories.failed_payment_repository import FailedPaymentRepository

__all__ = [
    "AuditLogRepository",
    "CustomerRepository",
    "DunningCampaignRepository",
    "FailedPaymentRepository",
]
