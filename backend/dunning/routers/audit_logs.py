"""Audit log API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from dunning.core.auth import ROLE_ADMIN, ROLE_FINANCE, Operator, get_current_organization, require_roles
from dunning.core.database import get_db
from dunning.repositories.audit_log_repository import AuditLogRepository
from dunning.schemas.audit_log import AuditLogResponse

router = APIRouter()

audit_reader = require_roles(ROLE_ADMIN, ROLE_FINANCE)


@router.get(
    "/",
    response_model=list[AuditLogResponse],
    summary="List audit logs",
    responses={403: {"description": "Operator lacks the ADMIN or FINANCE role"}},
)
async def list_audit_logs(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    resource_type: str | None = None,
    action: str | None = None,
    actor_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    order_by: str | None = None,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(audit_reader),
) -> list[AuditLogResponse]:
    """List audit logs with optional filters."""
    repo = AuditLogRepository(db)
    return [
        AuditLogResponse.model_validate(log)
        for log in repo.get_all(
            organization_id=organization_id,
            skip=skip,
            limit=limit,
            resource_type=resource_type,
            action=action,
            start_date=start_date,
            end_date=end_date,
            actor_id=actor_id,
            order_by=order_by,
        )
    ]


@router.get(
    "/{resource_type}/{resource_id}",
    response_model=list[AuditLogResponse],
    summary="Get audit trail for a resource",
    responses={403: {"description": "Operator lacks the ADMIN or FINANCE role"}},
)
async def get_resource_audit_trail(
    resource_type: str,
    resource_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
    operator: Operator = Depends(audit_reader),
) -> list[AuditLogResponse]:
    """Get the audit trail for a specific resource, oldest first."""
    repo = AuditLogRepository(db)
    logs = repo.get_by_resource(resource_type, resource_id, skip=skip, limit=limit)
    return [
        AuditLogResponse.model_validate(log)
        for log in logs
        if log.organization_id == organization_id
    ]
