"""Campaign registry: validation and persistence of retry policies."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.core.auth import Operator
from dunning.core.exceptions import ConflictError, NotFoundError, ValidationError
from dunning.models.dunning_campaign import CampaignStatus, CampaignType, DunningCampaign
from dunning.models.dunning_campaign_step import StepAction
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.schemas.dunning_campaign import (
    DunningCampaignCreate,
    DunningCampaignStepCreate,
    DunningCampaignUpdate,
)
from dunning.services.audit_service import (
    DUNNING_CAMPAIGN_CREATED,
    DUNNING_CAMPAIGN_UPDATED,
    AuditService,
)

logger = logging.getLogger(__name__)

MAX_STEPS = 10

_EMAIL_TYPES = (CampaignType.EMAIL.value, CampaignType.MULTI.value)
_SMS_TYPES = (CampaignType.SMS.value, CampaignType.MULTI.value)
_WEBHOOK_TYPES = (CampaignType.WEBHOOK.value, CampaignType.MULTI.value)


def normalize_schedule(schedule: list[DunningCampaignStepCreate]) -> list[dict[str, Any]]:
    """Validate a retry schedule and number its steps 1..n.

    Raises:
        ValidationError: empty or oversized schedule, negative delay, or
            explicit step numbers that are not 1..n in order.
    """
    if not schedule:
        raise ValidationError("Retry schedule must contain at least one step")
    if len(schedule) > MAX_STEPS:
        raise ValidationError(f"Retry schedule may contain at most {MAX_STEPS} steps")

    steps = []
    for position, step in enumerate(schedule, start=1):
        if step.delay_days < 0:
            raise ValidationError(f"Step {position}: delay_days must be >= 0")
        if step.step_number is not None and step.step_number != position:
            raise ValidationError(
                f"Step numbers must run 1..{len(schedule)} in order; "
                f"got {step.step_number} at position {position}"
            )
        steps.append(
            {
                "step_number": position,
                "delay_days": step.delay_days,
                "action": StepAction(step.action).value,
                "escalation_level": step.escalation_level.value,
            }
        )
    return steps


def validate_channels(
    campaign_type: str,
    templates: dict[str, Any],
    webhook_config: dict[str, Any] | None,
    steps: list[dict[str, Any]],
) -> None:
    """Every channel the campaign uses must be configured."""
    if campaign_type in _EMAIL_TYPES and not templates.get("email"):
        raise ValidationError(f"{campaign_type} campaigns require an email template")
    if campaign_type in _SMS_TYPES and not templates.get("sms"):
        raise ValidationError(f"{campaign_type} campaigns require an sms template")
    if campaign_type in _WEBHOOK_TYPES and not webhook_config:
        raise ValidationError(f"{campaign_type} campaigns require a webhook config")

    for step in steps:
        if step["action"] == StepAction.SEND_EMAIL.value and not templates.get("email"):
            raise ValidationError(f"Step {step['step_number']}: send_email needs an email template")
        if step["action"] == StepAction.SEND_SMS.value and not templates.get("sms"):
            raise ValidationError(f"Step {step['step_number']}: send_sms needs an sms template")


def _campaign_snapshot(campaign: DunningCampaign, steps: list[Any]) -> dict[str, Any]:
    return {
        "name": campaign.name,
        "description": campaign.description,
        "type": campaign.type,
        "status": campaign.status,
        "priority": campaign.priority,
        "delay_anchor": campaign.delay_anchor,
        "trigger_conditions": campaign.trigger_conditions,
        "templates": campaign.templates,
        "webhook_config": campaign.webhook_config,
        "tags": campaign.tags,
        "retry_schedule": [
            {"step_number": s.step_number, "delay_days": s.delay_days, "action": s.action}
            for s in steps
        ],
    }


class CampaignService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = DunningCampaignRepository(db)
        self.audit = AuditService(db)

    def get_campaign(self, campaign_id: UUID, organization_id: UUID) -> DunningCampaign:
        campaign = self.repo.get_by_id(campaign_id, organization_id)
        if not campaign:
            raise NotFoundError(f"Dunning campaign {campaign_id} not found")
        return campaign

    def list_campaigns(
        self,
        organization_id: UUID,
        page: int = 1,
        limit: int = 20,
        status: str | None = None,
        campaign_type: str | None = None,
        search: str | None = None,
        order_by: str | None = None,
    ) -> tuple[list[DunningCampaign], int]:
        campaigns = self.repo.get_all(
            organization_id,
            skip=(page - 1) * limit,
            limit=limit,
            status=status,
            campaign_type=campaign_type,
            search=search,
            order_by=order_by,
        )
        total = self.repo.count(organization_id, status, campaign_type, search)
        return campaigns, total

    def create_campaign(
        self,
        data: DunningCampaignCreate,
        organization_id: UUID,
        operator: Operator,
    ) -> DunningCampaign:
        """Validate and store a campaign. Nothing is written when validation fails."""
        steps = normalize_schedule(data.retry_schedule)
        templates = self._templates(data.email_template, data.sms_template)
        webhook_config = data.webhook_config.model_dump() if data.webhook_config else None
        validate_channels(data.type.value, templates, webhook_config, steps)

        if self.repo.get_by_name(data.name, organization_id):
            raise ConflictError(f"Campaign with name '{data.name}' already exists")

        fields = {
            "name": data.name,
            "description": data.description,
            "type": data.type.value,
            "status": CampaignStatus.ACTIVE.value if data.active else CampaignStatus.DRAFT.value,
            "priority": data.priority,
            "delay_anchor": data.delay_anchor.value,
            "trigger_conditions": data.trigger_conditions.model_dump(mode="json"),
            "templates": templates,
            "webhook_config": webhook_config,
            "tags": list(data.tags),
            "created_by": operator.actor_id,
            "updated_by": operator.actor_id,
        }
        campaign = self.repo.create(organization_id, fields, steps)
        logger.info("Created dunning campaign %s (%s)", campaign.id, campaign.name)

        self.audit.log(
            DUNNING_CAMPAIGN_CREATED,
            "dunning_campaign",
            campaign.id,
            organization_id,
            operator,
            details={
                "name": campaign.name,
                "type": campaign.type,
                "status": campaign.status,
                "steps": len(steps),
            },
        )
        return campaign

    def update_campaign(
        self,
        campaign_id: UUID,
        data: DunningCampaignUpdate,
        organization_id: UUID,
        operator: Operator,
    ) -> DunningCampaign:
        """Partial update; the schedule is replaced as a whole when given."""
        campaign = self.get_campaign(campaign_id, organization_id)
        old_steps = self.repo.get_steps(campaign.id)
        before = _campaign_snapshot(campaign, old_steps)

        provided = data.model_fields_set
        steps = normalize_schedule(data.retry_schedule) if data.retry_schedule is not None else None

        templates = dict(campaign.templates or {})
        if "email_template" in provided:
            templates.pop("email", None)
            if data.email_template is not None:
                templates["email"] = data.email_template.model_dump()
        if "sms_template" in provided:
            templates.pop("sms", None)
            if data.sms_template is not None:
                templates["sms"] = data.sms_template.model_dump()

        webhook_config = campaign.webhook_config
        if "webhook_config" in provided:
            webhook_config = data.webhook_config.model_dump() if data.webhook_config else None

        campaign_type = data.type.value if data.type is not None else campaign.type
        effective_steps = steps if steps is not None else [
            {"step_number": s.step_number, "action": s.action} for s in old_steps
        ]
        validate_channels(campaign_type, templates, webhook_config, effective_steps)

        if data.name is not None and data.name != campaign.name:
            existing = self.repo.get_by_name(data.name, organization_id)
            if existing and existing.id != campaign.id:
                raise ConflictError(f"Campaign with name '{data.name}' already exists")

        fields: dict[str, Any] = {"templates": templates, "webhook_config": webhook_config}
        for key in ("name", "description", "priority", "tags"):
            if key in provided and getattr(data, key) is not None:
                fields[key] = getattr(data, key)
        if "description" in provided and data.description is None:
            fields["description"] = None
        if data.type is not None:
            fields["type"] = data.type.value
        if data.status is not None:
            fields["status"] = data.status.value
        if data.delay_anchor is not None:
            fields["delay_anchor"] = data.delay_anchor.value
        if data.trigger_conditions is not None:
            fields["trigger_conditions"] = data.trigger_conditions.model_dump(mode="json")
        fields["updated_by"] = operator.actor_id

        campaign = self.repo.update(campaign, fields, steps)
        after = _campaign_snapshot(campaign, self.repo.get_steps(campaign.id))

        self.audit.log_update(
            DUNNING_CAMPAIGN_UPDATED,
            "dunning_campaign",
            campaign.id,
            organization_id,
            operator,
            old_data=before,
            new_data=after,
        )
        return campaign

    @staticmethod
    def _templates(email: Any, sms: Any) -> dict[str, Any]:
        templates: dict[str, Any] = {}
        if email is not None:
            templates["email"] = email.model_dump()
        if sms is not None:
            templates["sms"] = sms.model_dump()
        return templates
