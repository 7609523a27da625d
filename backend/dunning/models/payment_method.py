"""PaymentMethod model for storing customer payment methods."""


from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, func

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class PaymentMethod(Base):
    """PaymentMethod model - saved methods the gateway can charge off-session."""

    __tablename__ = "payment_methods"

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

    provider = Column(String(50), nullable=False)  # stripe / manual
    provider_payment_method_id = Column(String(255), nullable=False)

    type = Column(String(50), nullable=False, default="card")  # card / bank_account

    is_default = Column(Boolean, nullable=False, default=False)

    # last4, brand, exp_month, exp_year
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
