"""AuditLog model - append-only audit sink for operator and system actions."""


from sqlalchemy import JSON, Column, DateTime, ForeignKey, String

from dunning.core.database import Base
from dunning.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid, utc_now


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(UUIDType, nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
