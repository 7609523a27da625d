"""Runs the due step of a campaign schedule against one failed payment.

Due-ness is recomputed from persisted timestamps on every scan, so a missed
or repeated scan never skips or doubles a step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from dunning.core.exceptions import TransientInfraError
from dunning.models.dunning_campaign import DelayAnchor, DunningCampaign
from dunning.models.dunning_campaign_step import DunningCampaignStep, StepAction
from dunning.models.failed_payment import FailedPayment, FailedPaymentStatus, RecoveryMethod
from dunning.models.shared import as_utc
from dunning.services.gateway import ChargeResult, GatewayAdapter
from dunning.services.lifecycle import (
    ABANDON_SCHEDULE_EXHAUSTED,
    ABANDON_SUBSCRIPTION_CANCELLED,
    FailedPaymentLifecycle,
)
from dunning.services.notification_dispatcher import (
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    CHANNEL_WEBHOOK,
    STEP_EXECUTED_EVENT,
    NotificationDispatcher,
)

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    executed: bool
    step_number: int | None = None
    action: str | None = None
    success: bool = False
    recovered: bool = False
    recovered_amount: Decimal = Decimal("0")
    abandoned: bool = False
    subscription_cancelled: bool = False
    webhook_error: str | None = None


def current_step(
    payment: FailedPayment, steps: list[DunningCampaignStep]
) -> DunningCampaignStep | None:
    """The step at index ``retry_attempts``; None once the schedule is exhausted."""
    index = int(payment.retry_attempts)
    if index >= len(steps):
        return None
    return steps[index]


def step_due_at(
    payment: FailedPayment,
    step: DunningCampaignStep,
    campaign: DunningCampaign,
) -> datetime:
    if campaign.delay_anchor == DelayAnchor.FAILURE.value:
        anchor = as_utc(payment.created_at)
    else:
        anchor = as_utc(payment.last_retry_at) or as_utc(payment.created_at)
    return anchor + timedelta(days=int(step.delay_days))  # type: ignore[operator]


def is_step_due(
    payment: FailedPayment,
    step: DunningCampaignStep,
    campaign: DunningCampaign,
    now: datetime,
) -> bool:
    return now >= step_due_at(payment, step, campaign)


def template_variables(
    payment: FailedPayment,
    customer_name: str | None,
    **extra: Any,
) -> dict[str, Any]:
    variables: dict[str, Any] = {
        "failed_payment_id": str(payment.id),
        "customer_id": str(payment.customer_id),
        "customer_name": customer_name or "Customer",
        "amount": f"{Decimal(str(payment.amount)):.2f}",
        "currency": payment.currency,
        "failure_reason": payment.failure_reason or "",
        "retry_attempts": payment.retry_attempts,
    }
    variables.update(extra)
    return variables


class StepExecutor:
    """Executes one campaign step. Gateway and dispatcher are injected."""

    def __init__(
        self,
        db: Session,
        gateway: GatewayAdapter,
        dispatcher: NotificationDispatcher,
        lifecycle: FailedPaymentLifecycle | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle or FailedPaymentLifecycle(db)

    def plan(
        self,
        campaign: DunningCampaign,
        steps: list[DunningCampaignStep],
        payment: FailedPayment,
        now: datetime,
    ) -> DunningCampaignStep | None:
        """The step that would run now, without side effects."""
        step = current_step(payment, steps)
        if step is None or not is_step_due(payment, step, campaign, now):
            return None
        return step

    def schedule_next(
        self,
        payment: FailedPayment,
        steps: list[DunningCampaignStep],
        campaign: DunningCampaign,
    ) -> bool:
        """Set next_retry_at from the following step. False when exhausted."""
        following = current_step(payment, steps)
        if following is None:
            payment.next_retry_at = None
            return False
        payment.next_retry_at = step_due_at(payment, following, campaign)
        return True

    async def execute(
        self,
        campaign: DunningCampaign,
        steps: list[DunningCampaignStep],
        payment: FailedPayment,
        now: datetime,
    ) -> StepOutcome:
        if self.plan(campaign, steps, payment, now) is None:
            return StepOutcome(executed=False)

        async with self.lifecycle.claimed(payment, now):
            # The record may have moved on since it was selected
            step = self.plan(campaign, steps, payment, now)
            if step is None:
                self.lifecycle.release(payment)
                return StepOutcome(executed=False)

            if step.action == StepAction.RETRY_PAYMENT.value:
                outcome = await self._retry_payment(campaign, steps, step, payment, now)
            elif step.action in (StepAction.SEND_EMAIL.value, StepAction.SEND_SMS.value):
                outcome = await self._notify(campaign, steps, step, payment, now)
            elif step.action == StepAction.CANCEL_SUBSCRIPTION.value:
                outcome = self._cancel_subscription(step, payment, now)
            else:
                raise ValueError(f"Unknown step action: {step.action}")

            if payment.dunning_campaign_id is None:
                payment.dunning_campaign_id = campaign.id
            self.lifecycle.commit(payment)

        logger.info(
            "Campaign %s step %d (%s) on failed payment %s -> %s",
            campaign.id,
            step.step_number,
            step.action,
            payment.id,
            payment.status,
        )
        if campaign.webhook_config:
            outcome.webhook_error = await self._send_step_webhook(campaign, step, payment, outcome)
        return outcome

    def _finish_non_terminal(
        self,
        campaign: DunningCampaign,
        steps: list[DunningCampaignStep],
        payment: FailedPayment,
        now: datetime,
        outcome: StepOutcome,
    ) -> None:
        if not self.schedule_next(payment, steps, campaign):
            self.lifecycle.mark_abandoned(
                payment, now, reason=ABANDON_SCHEDULE_EXHAUSTED, abandoned_by="system"
            )
            outcome.abandoned = True

    async def _retry_payment(
        self,
        campaign: DunningCampaign,
        steps: list[DunningCampaignStep],
        step: DunningCampaignStep,
        payment: FailedPayment,
        now: datetime,
    ) -> StepOutcome:
        amount = Decimal(str(payment.amount))
        method = self.lifecycle.resolve_payment_method(payment)
        if method is None:
            result = ChargeResult(success=False, failure_reason="no_payment_method")
        else:
            result = await self.gateway.charge(
                str(payment.customer_id),
                method,
                amount,
                payment.currency,
                self.lifecycle.gateway_metadata(
                    payment,
                    campaign_id=str(campaign.id),
                    campaign_step=step.step_number,
                ),
            )

        self.lifecycle.append_attempt(
            payment,
            now,
            action=StepAction.RETRY_PAYMENT.value,
            success=result.success,
            amount=amount,
            payment_method_id=method,
            failure_reason=result.failure_reason,
            error_code=result.error_code,
            provider_payment_id=result.payment_id,
            campaign_step=step.step_number,
            retried_by="system",
        )
        outcome = StepOutcome(
            executed=True,
            step_number=step.step_number,
            action=step.action,
            success=result.success,
        )
        if result.success:
            self.lifecycle.mark_recovered(
                payment,
                now,
                amount=amount,
                provider_payment_id=result.payment_id,
                payment_method_id=method,
                recovery_method=RecoveryMethod.CAMPAIGN.value,
                recovered_by="system",
            )
            outcome.recovered = True
            outcome.recovered_amount = amount
        else:
            self._finish_non_terminal(campaign, steps, payment, now, outcome)
        return outcome

    async def _notify(
        self,
        campaign: DunningCampaign,
        steps: list[DunningCampaignStep],
        step: DunningCampaignStep,
        payment: FailedPayment,
        now: datetime,
    ) -> StepOutcome:
        is_email = step.action == StepAction.SEND_EMAIL.value
        channel = CHANNEL_EMAIL if is_email else CHANNEL_SMS
        customer = self.lifecycle.get_customer(payment)
        recipient = None
        if customer is not None:
            recipient = customer.email if is_email else customer.phone
        template = (campaign.templates or {}).get(channel)

        failure_reason = None
        if not recipient:
            ack = False
            failure_reason = f"no_{'email' if is_email else 'phone'}"
        elif not template:
            ack = False
            failure_reason = "missing_template"
        else:
            ack = await self.dispatcher.send(
                channel,
                template,
                recipient,
                template_variables(
                    payment,
                    customer.name if customer is not None else None,
                    step_number=step.step_number,
                    campaign_name=campaign.name,
                ),
            )
            if not ack:
                failure_reason = "not_delivered"

        self.lifecycle.append_attempt(
            payment,
            now,
            action=step.action,
            success=ack,
            failure_reason=failure_reason,
            campaign_step=step.step_number,
            retried_by="system",
        )
        outcome = StepOutcome(
            executed=True,
            step_number=step.step_number,
            action=step.action,
            success=ack,
        )
        self._finish_non_terminal(campaign, steps, payment, now, outcome)
        return outcome

    def _cancel_subscription(
        self,
        step: DunningCampaignStep,
        payment: FailedPayment,
        now: datetime,
    ) -> StepOutcome:
        self.lifecycle.append_attempt(
            payment,
            now,
            action=step.action,
            success=True,
            campaign_step=step.step_number,
            retried_by="system",
        )
        cancelled = self.lifecycle.mark_abandoned(
            payment,
            now,
            reason=ABANDON_SUBSCRIPTION_CANCELLED,
            abandoned_by="system",
            cancel_subscription=True,
        )
        return StepOutcome(
            executed=True,
            step_number=step.step_number,
            action=step.action,
            success=True,
            abandoned=True,
            subscription_cancelled=cancelled,
        )

    async def _send_step_webhook(
        self,
        campaign: DunningCampaign,
        step: DunningCampaignStep,
        payment: FailedPayment,
        outcome: StepOutcome,
    ) -> str | None:
        config = dict(campaign.webhook_config or {})
        url = config.get("url")
        if not url:
            return None
        payload = {
            "failed_payment_id": str(payment.id),
            "campaign_id": str(campaign.id),
            "step_number": step.step_number,
            "action": step.action,
            "success": outcome.success,
            "status": payment.status,
            "retry_attempts": payment.retry_attempts,
            "amount": f"{Decimal(str(payment.amount)):.2f}",
            "currency": payment.currency,
            "recovered": payment.status == FailedPaymentStatus.RECOVERED.value,
        }
        config["event"] = STEP_EXECUTED_EVENT
        try:
            delivered = await self.dispatcher.send(CHANNEL_WEBHOOK, config, url, payload)
        except TransientInfraError as exc:
            logger.warning("Step webhook for campaign %s failed: %s", campaign.id, exc)
            return exc.message
        return None if delivered else f"Webhook {url} was not acknowledged"
