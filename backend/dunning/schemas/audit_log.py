"""Pydantic schemas for AuditLog."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class AuditLogResponse(BaseModel):
    id: UUID
    organization_id: UUID
    resource_type: str
    resource_id: UUID | None
    action: str
    details: dict[str, Any]
    actor_type: str
    actor_id: str | None

    model_config = {"from_attributes": True}

    created_at: datetime
