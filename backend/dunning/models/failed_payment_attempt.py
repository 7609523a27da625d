"""FailedPaymentAttempt model - one entry of a failed payment's retry history."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from dunning.core.database import Base
from dunning.models.shared import UUIDType, generate_uuid, utc_now


class FailedPaymentAttempt(Base):
    """Append-only; ``sequence`` is 1-based and gap free per failed payment."""

    __tablename__ = "failed_payment_attempts"
    __table_args__ = (
        UniqueConstraint("failed_payment_id", "sequence", name="uq_failed_payment_attempt_seq"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    failed_payment_id = Column(
        UUIDType,
        ForeignKey("failed_payments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    attempted_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    action = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_method_id = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(255), nullable=True)
    error_code = Column(String(100), nullable=True)
    provider_payment_id = Column(String(255), nullable=True)
    campaign_step = Column(Integer, nullable=True)
    retried_by = Column(String(255), nullable=True)
    reason = Column(String(500), nullable=True)
    bulk_retry = Column(Boolean, nullable=False, default=False)
