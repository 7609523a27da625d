"""DunningCampaignExecution model - one scan of one campaign."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid, utc_now


class DunningCampaignExecution(Base):
    __tablename__ = "dunning_campaign_executions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    dunning_campaign_id = Column(
        UUIDType,
        ForeignKey("dunning_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    dry_run = Column(Boolean, nullable=False, default=False)
    payments_evaluated = Column(Integer, nullable=False, default=0)
    payments_processed = Column(Integer, nullable=False, default=0)
    retries_attempted = Column(Integer, nullable=False, default=0)
    payments_recovered = Column(Integer, nullable=False, default=0)
    recovered_amount = Column(Numeric(12, 2), nullable=False, default=0)
    emails_sent = Column(Integer, nullable=False, default=0)
    sms_sent = Column(Integer, nullable=False, default=0)
    subscriptions_cancelled = Column(Integer, nullable=False, default=0)
    payments_abandoned = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    finished_at = Column(DateTime(timezone=True), nullable=True)
