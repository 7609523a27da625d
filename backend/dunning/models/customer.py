"""Customer model - the billed account whose access dunning may restrict."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, func

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class AccessLevel(str, Enum):
    FULL = "full"
    LIMITED = "limited"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    subscription_status = Column(String(20), nullable=False, default="active")
    access_level = Column(String(20), nullable=False, default=AccessLevel.FULL.value)
    billing_metadata = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
