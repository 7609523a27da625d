"""Audit service for recording operator and system actions."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.core.auth import Operator
from dunning.repositories.audit_log_repository import AuditLogRepository

DUNNING_CAMPAIGN_CREATED = "DUNNING_CAMPAIGN_CREATED"
DUNNING_CAMPAIGN_UPDATED = "DUNNING_CAMPAIGN_UPDATED"
DUNNING_PROCESS_EXECUTED = "DUNNING_PROCESS_EXECUTED"
FAILED_PAYMENT_RECORDED = "FAILED_PAYMENT_RECORDED"
PAYMENT_RETRY_SUCCESS = "PAYMENT_RETRY_SUCCESS"
PAYMENT_RETRY_FAILED = "PAYMENT_RETRY_FAILED"
BULK_PAYMENT_RETRY = "BULK_PAYMENT_RETRY"
PAYMENT_ABANDONED = "PAYMENT_ABANDONED"


class AuditService:
    """Service for recording audit trail entries."""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
        organization_id: UUID,
        operator: Operator,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit entry."""
        self.repo.create(
            organization_id=organization_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            details=details or {},
            actor_type=operator.actor_type,
            actor_id=operator.actor_id,
        )

    def log_update(
        self,
        action: str,
        resource_type: str,
        resource_id: UUID,
        organization_id: UUID,
        operator: Operator,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
    ) -> None:
        """Log an update event, auto-diffing changed fields."""
        old = old_data or {}
        new = new_data or {}
        changes: dict[str, Any] = {}
        for key in sorted(set(old.keys()) | set(new.keys())):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = {"old": old_val, "new": new_val}
        if not changes:
            return
        self.log(
            action,
            resource_type,
            resource_id,
            organization_id,
            operator,
            details={"changes": changes},
        )
