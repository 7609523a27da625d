"""DunningCampaignStep model - one entry of a campaign's retry schedule."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from dunning.core.database import Base
from dunning.models.shared import UUIDType, generate_uuid


class StepAction(str, Enum):
    RETRY_PAYMENT = "retry_payment"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CANCEL_SUBSCRIPTION = "cancel_subscription"


class EscalationLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DunningCampaignStep(Base):
    """Step model - ordered by step_number starting at 1."""

    __tablename__ = "dunning_campaign_steps"
    __table_args__ = (
        UniqueConstraint("dunning_campaign_id", "step_number", name="uq_campaign_step_number"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dunning_campaign_id = Column(
        UUIDType,
        ForeignKey("dunning_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_number = Column(Integer, nullable=False)
    delay_days = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    escalation_level = Column(String(20), nullable=False, default=EscalationLevel.MEDIUM.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
