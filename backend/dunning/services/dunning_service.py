"""Campaign scan: evaluate every active campaign against eligible failed payments.

Scans are level-triggered and restart safe: each run recomputes which step is
due from persisted timestamps, so running it twice at the same instant is a
no-op for records already advanced.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dunning.core.auth import SYSTEM_OPERATOR, Operator
from dunning.core.exceptions import DunningError, NotFoundError, ValidationError
from dunning.models.dunning_campaign import CampaignStatus, DunningCampaign
from dunning.models.dunning_campaign_step import StepAction
from dunning.models.failed_payment import FailedPayment
from dunning.models.shared import utc_now
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.services.audit_service import DUNNING_PROCESS_EXECUTED, AuditService
from dunning.services.eligibility import EligibilityFilter
from dunning.services.gateway import GatewayAdapter
from dunning.services.lifecycle import FailedPaymentLifecycle
from dunning.services.notification_dispatcher import NotificationDispatcher
from dunning.services.step_executor import StepExecutor

logger = logging.getLogger(__name__)

_COUNTERS = (
    "payments_evaluated",
    "payments_processed",
    "retries_attempted",
    "payments_recovered",
    "emails_sent",
    "sms_sent",
    "subscriptions_cancelled",
    "payments_abandoned",
)


def _error_entry(
    exc: Exception,
    campaign_id: UUID | None = None,
    failed_payment_id: UUID | None = None,
) -> dict[str, Any]:
    if isinstance(exc, DunningError):
        code, message = exc.code, exc.message
    elif isinstance(exc, SQLAlchemyError):
        code, message = "database_error", str(exc)
    else:
        code, message = "internal_error", str(exc)
    return {
        "code": code,
        "message": message,
        "campaign_id": str(campaign_id) if campaign_id else None,
        "failed_payment_id": str(failed_payment_id) if failed_payment_id else None,
    }


class DunningService:
    """Runs campaign scans on demand or from the background worker."""

    def __init__(
        self,
        db: Session,
        gateway: GatewayAdapter,
        dispatcher: NotificationDispatcher,
    ):
        self.db = db
        self.campaign_repo = DunningCampaignRepository(db)
        self.eligibility = EligibilityFilter(db)
        self.lifecycle = FailedPaymentLifecycle(db)
        self.executor = StepExecutor(db, gateway, dispatcher, self.lifecycle)
        self.audit = AuditService(db)

    async def process(
        self,
        organization_id: UUID,
        operator: Operator = SYSTEM_OPERATOR,
        campaign_id: UUID | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Scan active campaigns (or one) and execute or plan due steps.

        Bindings are resolved across all active campaigns first so that
        restricting the run to one campaign never steals records that belong
        to a higher-priority one.
        """
        now = now or utc_now()
        campaigns = self.campaign_repo.get_active(organization_id)

        if campaign_id is not None:
            target = self.campaign_repo.get_by_id(campaign_id, organization_id)
            if target is None:
                raise NotFoundError(f"Dunning campaign {campaign_id} not found")
            if target.status != CampaignStatus.ACTIVE.value:
                raise ValidationError(
                    f"Dunning campaign {campaign_id} is {target.status}, not active"
                )
            targets = [target]
        else:
            targets = campaigns

        assignments = self.eligibility.resolve_bindings(campaigns, now)

        outcomes = await asyncio.gather(
            *(
                self._process_campaign(c, assignments.get(c.id, []), now, dry_run)
                for c in targets
            ),
            return_exceptions=True,
        )

        response: dict[str, Any] = {
            "dry_run": dry_run,
            "campaigns_processed": 0,
            "campaigns": [],
            "errors": [],
        }
        for key in _COUNTERS[1:]:
            response[key] = 0

        for campaign, outcome in zip(targets, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Dunning scan failed for campaign %s: %s", campaign.id, outcome)
                response["errors"].append(_error_entry(outcome, campaign_id=campaign.id))
                continue
            response["campaigns_processed"] += 1
            response["campaigns"].append(outcome)
            response["errors"].extend(outcome["errors"])
            for key in _COUNTERS[1:]:
                response[key] += outcome[key]

        verb = "Planned" if dry_run else "Processed"
        response["message"] = (
            f"{verb} {response['payments_processed']} payments "
            f"across {response['campaigns_processed']} campaigns"
        )

        self.audit.log(
            DUNNING_PROCESS_EXECUTED,
            "dunning_process",
            campaign_id,
            organization_id,
            operator,
            details={
                "dry_run": dry_run,
                "campaigns_processed": response["campaigns_processed"],
                "payments_processed": response["payments_processed"],
                "payments_recovered": response["payments_recovered"],
                "errors": len(response["errors"]),
            },
        )
        logger.info(
            "Dunning scan for organization %s: %s (dry_run=%s)",
            organization_id,
            response["message"],
            dry_run,
        )
        return response

    async def _process_campaign(
        self,
        campaign: DunningCampaign,
        payments: list[FailedPayment],
        now: datetime,
        dry_run: bool,
    ) -> dict[str, Any]:
        started_at = utc_now()
        steps = self.campaign_repo.get_steps(campaign.id)
        result: dict[str, Any] = {key: 0 for key in _COUNTERS}
        result.update(
            {
                "campaign_id": campaign.id,
                "campaign_name": campaign.name,
                "skipped_not_due": 0,
                "recovered_amount": Decimal("0"),
                "planned_actions": [],
                "errors": [],
            }
        )

        for payment in payments:
            result["payments_evaluated"] += 1
            payment_id = payment.id

            if dry_run:
                step = self.executor.plan(campaign, steps, payment, now)
                if step is None:
                    result["skipped_not_due"] += 1
                    continue
                result["payments_processed"] += 1
                result["planned_actions"].append(
                    {
                        "failed_payment_id": payment_id,
                        "campaign_id": campaign.id,
                        "step_number": step.step_number,
                        "action": step.action,
                    }
                )
                continue

            try:
                if payment.dunning_campaign_id is None:
                    self.lifecycle.bind(payment, campaign.id)
                outcome = await self.executor.execute(campaign, steps, payment, now)
            except (DunningError, SQLAlchemyError) as exc:
                if isinstance(exc, SQLAlchemyError):
                    self.db.rollback()
                logger.warning(
                    "Campaign %s failed on payment %s: %s", campaign.id, payment_id, exc
                )
                result["errors"].append(
                    _error_entry(exc, campaign_id=campaign.id, failed_payment_id=payment_id)
                )
                continue

            if not outcome.executed:
                result["skipped_not_due"] += 1
                continue

            result["payments_processed"] += 1
            result["planned_actions"].append(
                {
                    "failed_payment_id": payment_id,
                    "campaign_id": campaign.id,
                    "step_number": outcome.step_number,
                    "action": outcome.action,
                }
            )
            if outcome.action == StepAction.RETRY_PAYMENT.value:
                result["retries_attempted"] += 1
            elif outcome.action == StepAction.SEND_EMAIL.value and outcome.success:
                result["emails_sent"] += 1
            elif outcome.action == StepAction.SEND_SMS.value and outcome.success:
                result["sms_sent"] += 1
            if outcome.recovered:
                result["payments_recovered"] += 1
                result["recovered_amount"] += outcome.recovered_amount
            if outcome.abandoned:
                result["payments_abandoned"] += 1
            if outcome.subscription_cancelled:
                result["subscriptions_cancelled"] += 1
            if outcome.webhook_error:
                result["errors"].append(
                    {
                        "code": "webhook_delivery_failed",
                        "message": outcome.webhook_error,
                        "campaign_id": str(campaign.id),
                        "failed_payment_id": str(payment_id),
                    }
                )

        if not dry_run:
            self.campaign_repo.create_execution(
                organization_id=campaign.organization_id,
                campaign_id=campaign.id,
                started_at=started_at,
                counters={key: result[key] for key in _COUNTERS}
                | {"recovered_amount": result["recovered_amount"]},
                errors=result["errors"],
                finished_at=utc_now(),
            )
        return result
