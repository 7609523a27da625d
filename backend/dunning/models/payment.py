"""Payment model for recovered charges and abandonment refunds."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, func

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class PaymentKind(str, Enum):
    RECOVERY = "recovery"
    REFUND = "refund"


class Payment(Base):
    """Payment model - money actually moved by the gateway."""

    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    customer_id = Column(
        UUIDType, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    subscription_id = Column(
        UUIDType, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True
    )
    failed_payment_id = Column(
        UUIDType, ForeignKey("failed_payments.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Negative for refunds
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.SUCCEEDED.value)
    kind = Column(String(20), nullable=False, default=PaymentKind.RECOVERY.value)

    provider = Column(String(50), nullable=False, default="stripe")
    provider_payment_id = Column(String(255), nullable=True, index=True)
    payment_method_id = Column(String(255), nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
