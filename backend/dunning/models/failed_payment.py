"""FailedPayment model - the append-only recovery ledger for one failed charge."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid, utc_now


class FailedPaymentStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RECOVERED = "recovered"
    ABANDONED = "abandoned"


ACTIVE_STATUSES = (FailedPaymentStatus.PENDING.value, FailedPaymentStatus.RETRYING.value)
TERMINAL_STATUSES = (FailedPaymentStatus.RECOVERED.value, FailedPaymentStatus.ABANDONED.value)


class RecoveryMethod(str, Enum):
    CAMPAIGN = "campaign"
    MANUAL_RETRY = "manual_retry"
    BULK_RETRY = "bulk_retry"


class FailedPayment(Base):
    """FailedPayment model.

    ``version`` is an optimistic lock: every ORM flush compares it, and the
    claim step bumps it with a conditional UPDATE before any gateway call.
    """

    __tablename__ = "failed_payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    customer_id = Column(
        UUIDType,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    dunning_campaign_id = Column(
        UUIDType,
        ForeignKey("dunning_campaigns.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(
        String(20), nullable=False, default=FailedPaymentStatus.PENDING.value, index=True
    )

    # Original failure
    failure_reason = Column(String(255), nullable=True)
    error_code = Column(String(100), nullable=True)
    original_payment_id = Column(String(255), nullable=True)
    failure_count = Column(Integer, nullable=False, default=1)
    payment_method_id = Column(String(255), nullable=True)

    # Retry tracking
    retry_attempts = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)

    # Recovery
    recovered_at = Column(DateTime(timezone=True), nullable=True)
    recovered_payment_id = Column(UUIDType, nullable=True)
    recovery_method = Column(String(20), nullable=True)
    recovered_by = Column(String(255), nullable=True)

    # Abandonment
    abandoned_at = Column(DateTime(timezone=True), nullable=True)
    abandonment_reason = Column(String(255), nullable=True)
    abandoned_by = Column(String(255), nullable=True)
    internal_notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
