"""DunningCampaign model - named retry policies for failed payments."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, func

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid, utc_now


class CampaignType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    MULTI = "multi"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class DelayAnchor(str, Enum):
    """What a step's delay_days is measured from."""

    LAST_ATTEMPT = "last_attempt"
    FAILURE = "failure"


class DunningCampaign(Base):
    """DunningCampaign model - eligibility predicate plus an ordered retry schedule."""

    __tablename__ = "dunning_campaigns"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(20), nullable=False, default=CampaignType.EMAIL.value)
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT.value, index=True)
    priority = Column(Integer, nullable=False, default=5)
    delay_anchor = Column(String(20), nullable=False, default=DelayAnchor.LAST_ATTEMPT.value)

    # {min_failure_count, min_days_since_failure, amount_threshold,
    #  exclude_trial_users, plan_whitelist}
    trigger_conditions = Column(JSON, nullable=False, default=dict)
    # {"email": {...}, "sms": {...}}
    templates = Column(JSON, nullable=False, default=dict)
    webhook_config = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
