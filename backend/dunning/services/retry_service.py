"""Operator-driven recovery: failure intake, manual retry, bulk retry and abandonment."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dunning.core.auth import Operator
from dunning.core.config import settings
from dunning.core.exceptions import (
    DunningError,
    GatewayDeclineError,
    NotFoundError,
    TerminalPolicyViolation,
    TransientInfraError,
    ValidationError,
)
from dunning.models.dunning_campaign_step import StepAction
from dunning.models.failed_payment import FailedPayment, FailedPaymentStatus, RecoveryMethod
from dunning.models.failed_payment_attempt import FailedPaymentAttempt
from dunning.models.payment import Payment
from dunning.models.shared import as_utc, utc_now
from dunning.models.subscription import SubscriptionPaymentStatus, SubscriptionStatus
from dunning.repositories.customer_repository import CustomerRepository
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.repositories.failed_payment_repository import FailedPaymentRepository
from dunning.schemas.failed_payment import AbandonRequest, FailedPaymentCreate, RetryRequest
from dunning.services.audit_service import (
    BULK_PAYMENT_RETRY,
    FAILED_PAYMENT_RECORDED,
    PAYMENT_ABANDONED,
    PAYMENT_RETRY_FAILED,
    PAYMENT_RETRY_SUCCESS,
    AuditService,
)
from dunning.services.backoff import BackoffPolicy
from dunning.services.gateway import GatewayAdapter
from dunning.services.lifecycle import (
    ABANDON_MAX_MANUAL_RETRIES,
    ABANDON_SCHEDULE_EXHAUSTED,
    FailedPaymentLifecycle,
)
from dunning.services.notification_dispatcher import (
    CHANNEL_EMAIL,
    DEFAULT_TEMPLATES,
    NotificationDispatcher,
)
from dunning.services.step_executor import current_step, step_due_at, template_variables

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class RetryOutcome:
    failed_payment: FailedPayment
    success: bool
    attempt: int
    amount: Decimal
    failure_reason: str | None = None
    error_code: str | None = None
    payment: Payment | None = None


class RecoveryService:
    """Mutations an operator can apply to failed payments.

    Every path checks the terminal guard before touching the gateway, so
    repeating a request against a recovered or abandoned record never charges
    twice.
    """

    def __init__(
        self,
        db: Session,
        gateway: GatewayAdapter | None = None,
        dispatcher: NotificationDispatcher | None = None,
        backoff: BackoffPolicy | None = None,
    ):
        self.db = db
        self._gateway = gateway
        self._dispatcher = dispatcher
        self.backoff = backoff or BackoffPolicy()
        self.repo = FailedPaymentRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)
        self.lifecycle = FailedPaymentLifecycle(db)
        self.audit = AuditService(db)

    @property
    def gateway(self) -> GatewayAdapter:
        if self._gateway is None:
            raise RuntimeError("RecoveryService was created without a payment gateway")
        return self._gateway

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("RecoveryService was created without a notification dispatcher")
        return self._dispatcher

    def get_failed_payment(self, failed_payment_id: UUID, organization_id: UUID) -> FailedPayment:
        payment = self.repo.get_by_id(failed_payment_id, organization_id)
        if not payment:
            raise NotFoundError(f"Failed payment {failed_payment_id} not found")
        return payment

    def record_failure_event(
        self,
        data: FailedPaymentCreate,
        organization_id: UUID,
        operator: Operator,
    ) -> FailedPayment:
        """Open a pending record for a charge the billing system could not collect."""
        customer = self.customer_repo.get_by_id(data.customer_id, organization_id)
        if not customer:
            raise NotFoundError(f"Customer {data.customer_id} not found")

        subscription = None
        if data.subscription_id is not None:
            subscription = self.customer_repo.get_subscription(data.subscription_id, organization_id)
            if not subscription:
                raise NotFoundError(f"Subscription {data.subscription_id} not found")
            if subscription.customer_id != customer.id:
                raise ValidationError("Subscription does not belong to the customer")

        fields = data.model_dump(exclude={"failed_at"})
        fields["status"] = FailedPaymentStatus.PENDING.value
        if data.failed_at is not None:
            fields["created_at"] = data.failed_at

        if subscription is not None and subscription.status != SubscriptionStatus.CANCELED.value:
            subscription.payment_status = SubscriptionPaymentStatus.PAST_DUE.value
            if subscription.status == SubscriptionStatus.ACTIVE.value:
                subscription.status = SubscriptionStatus.PAST_DUE.value
            customer.subscription_status = SubscriptionStatus.PAST_DUE.value

        payment = self.repo.create(organization_id, fields)
        logger.info(
            "Recorded failed payment %s for customer %s (%s %s)",
            payment.id,
            payment.customer_id,
            payment.amount,
            payment.currency,
        )
        self.audit.log(
            FAILED_PAYMENT_RECORDED,
            "failed_payment",
            payment.id,
            organization_id,
            operator,
            details={
                "amount": str(payment.amount),
                "currency": payment.currency,
                "failure_reason": payment.failure_reason,
            },
        )
        return payment

    def _next_retry_at(self, payment: FailedPayment, now: datetime) -> datetime | None:
        """Campaign schedule when bound, else backoff.

        None when the bound campaign has no step left.
        """
        if payment.dunning_campaign_id is not None:
            campaign = self.campaign_repo.get_by_id(
                payment.dunning_campaign_id, payment.organization_id
            )
            if campaign is not None:
                step = current_step(payment, self.campaign_repo.get_steps(campaign.id))
                if step is None:
                    return None
                return step_due_at(payment, step, campaign)
        return self.backoff.next_retry_at(int(payment.retry_attempts), now)

    async def retry_payment(
        self,
        failed_payment_id: UUID,
        organization_id: UUID,
        operator: Operator,
        request: RetryRequest | None = None,
        *,
        bulk: bool = False,
        campaign_id: UUID | None = None,
        now: datetime | None = None,
    ) -> RetryOutcome:
        """Charge now, ignoring the campaign delay gate.

        Raises:
            NotFoundError: unknown id.
            TerminalPolicyViolation: the record is recovered or abandoned.
            ValidationError: no payment method is available.
            ConcurrencyConflictError: another writer holds the record.
            TransientInfraError: the gateway could not be reached; nothing recorded.
        """
        request = request or RetryRequest()
        now = now or utc_now()
        payment = self.get_failed_payment(failed_payment_id, organization_id)
        self.lifecycle.ensure_active(payment)

        method = request.payment_method_id or self.lifecycle.resolve_payment_method(payment)
        if not method:
            raise ValidationError(
                "No payment method available for retry",
                details={"failed_payment_id": str(payment.id)},
            )
        amount = request.amount if request.amount is not None else Decimal(str(payment.amount))

        recovered: Payment | None = None
        async with self.lifecycle.claimed(payment, now):
            result = await self.gateway.charge(
                str(payment.customer_id),
                method,
                amount,
                payment.currency,
                self.lifecycle.gateway_metadata(
                    payment,
                    bulk_retry=bulk or None,
                    retried_by=operator.actor_id,
                    campaign_id=str(campaign_id) if campaign_id else None,
                    reason=request.reason,
                ),
            )
            attempt = self.lifecycle.append_attempt(
                payment,
                now,
                action=StepAction.RETRY_PAYMENT.value,
                success=result.success,
                amount=amount,
                payment_method_id=method,
                failure_reason=result.failure_reason,
                error_code=result.error_code,
                provider_payment_id=result.payment_id,
                retried_by=operator.actor_id,
                reason=request.reason,
                bulk_retry=bulk,
            )
            if result.success:
                recovered = self.lifecycle.mark_recovered(
                    payment,
                    now,
                    amount=amount,
                    provider_payment_id=result.payment_id,
                    payment_method_id=method,
                    recovery_method=(
                        RecoveryMethod.BULK_RETRY.value if bulk else RecoveryMethod.MANUAL_RETRY.value
                    ),
                    recovered_by=operator.actor_id,
                )
                if request.update_payment_method and request.payment_method_id:
                    payment.payment_method_id = request.payment_method_id
                    self.lifecycle.make_default_payment_method(payment, request.payment_method_id)
            elif payment.retry_attempts >= settings.MAX_MANUAL_RETRY_ATTEMPTS:
                self.lifecycle.mark_abandoned(
                    payment, now, reason=ABANDON_MAX_MANUAL_RETRIES, abandoned_by=operator.actor_id
                )
            else:
                next_retry_at = self._next_retry_at(payment, now)
                if next_retry_at is None:
                    self.lifecycle.mark_abandoned(
                        payment,
                        now,
                        reason=ABANDON_SCHEDULE_EXHAUSTED,
                        abandoned_by=operator.actor_id,
                    )
                else:
                    payment.next_retry_at = next_retry_at
            attempt_number = int(attempt.sequence)
            self.lifecycle.commit(payment)

        logger.info(
            "Retry of failed payment %s by %s: %s",
            payment.id,
            operator.actor_id,
            "recovered" if result.success else result.failure_reason,
        )
        outcome = RetryOutcome(
            failed_payment=payment,
            success=result.success,
            attempt=attempt_number,
            amount=amount,
            failure_reason=result.failure_reason,
            error_code=result.error_code,
            payment=recovered,
        )

        if not bulk:
            self.audit.log(
                PAYMENT_RETRY_SUCCESS if result.success else PAYMENT_RETRY_FAILED,
                "failed_payment",
                payment.id,
                organization_id,
                operator,
                details={
                    "amount": str(amount),
                    "attempt": attempt_number,
                    "payment_method_id": method,
                    "failure_reason": result.failure_reason,
                    "reason": request.reason,
                },
            )
        if request.send_notification:
            template = "payment_recovered" if result.success else "payment_retry_failed"
            await self._notify_customer(payment, template, failure_reason=result.failure_reason)
        return outcome

    async def bulk_retry(
        self,
        payment_ids: list[UUID],
        organization_id: UUID,
        operator: Operator,
        batch_size: int | None = None,
        delay_between_batches: float | None = None,
        reason: str | None = None,
        campaign_id: UUID | None = None,
    ) -> dict[str, Any]:
        """Retry many records in fixed-size concurrent batches.

        Per-item failures are reported, never raised; a record that is
        already terminal is skipped without touching the gateway.
        """
        if batch_size is None:
            batch_size = settings.BULK_RETRY_DEFAULT_BATCH_SIZE
        if delay_between_batches is None:
            delay_between_batches = settings.BULK_RETRY_DEFAULT_DELAY_SECONDS
        if not 1 <= batch_size <= settings.BULK_RETRY_MAX_BATCH_SIZE:
            raise ValidationError(
                f"batch_size must be between 1 and {settings.BULK_RETRY_MAX_BATCH_SIZE}"
            )
        if campaign_id is not None and not self.campaign_repo.get_by_id(campaign_id, organization_id):
            raise NotFoundError(f"Dunning campaign {campaign_id} not found")

        ids = list(dict.fromkeys(payment_ids))
        if not ids:
            raise ValidationError("payment_ids must not be empty")
        if len(ids) > settings.BULK_RETRY_MAX_IDS:
            raise ValidationError(f"At most {settings.BULK_RETRY_MAX_IDS} payment ids per request")

        batches = [ids[i : i + batch_size] for i in range(0, len(ids), batch_size)]
        request = RetryRequest(reason=reason)
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []

        for index, batch in enumerate(batches, start=1):
            logger.info("Bulk retry batch %d/%d with %d payments", index, len(batches), len(batch))
            items = await asyncio.gather(
                *(
                    self._bulk_item(pid, index, organization_id, operator, request, campaign_id)
                    for pid in batch
                )
            )
            for item, error in items:
                results.append(item)
                if error is not None:
                    errors.append(error)
            if index < len(batches) and delay_between_batches > 0:
                await asyncio.sleep(delay_between_batches)

        successful = sum(1 for r in results if r["success"])
        skipped = sum(1 for r in results if r.get("error") == TerminalPolicyViolation.code)
        failed = len(results) - successful - skipped
        recovered_amount = sum(
            (r["amount"] for r in results if r["success"] and r["amount"] is not None),
            Decimal("0"),
        )
        summary = {
            "total": len(ids),
            "successful": successful,
            "failed": failed,
            "skipped": skipped,
            "success_rate": round(successful / len(ids) * 100, 2),
            "total_recovered_amount": recovered_amount,
            "batches": len(batches),
        }

        self.audit.log(
            BULK_PAYMENT_RETRY,
            "failed_payment",
            None,
            organization_id,
            operator,
            details={
                "total_payments": summary["total"],
                "successful_retries": successful,
                "failed_retries": failed,
                "skipped": skipped,
                "batch_size": batch_size,
                "campaign_id": str(campaign_id) if campaign_id else None,
                "reason": reason,
            },
        )
        return {
            "message": f"Bulk retry completed. {successful}/{len(ids)} payments recovered.",
            "summary": summary,
            "results": results,
            "errors": errors,
        }

    async def _bulk_item(
        self,
        payment_id: UUID,
        batch: int,
        organization_id: UUID,
        operator: Operator,
        request: RetryRequest,
        campaign_id: UUID | None,
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        item: dict[str, Any] = {"payment_id": payment_id, "batch": batch, "success": False}
        try:
            outcome = await self.retry_payment(
                payment_id,
                organization_id,
                operator,
                request,
                bulk=True,
                campaign_id=campaign_id,
            )
        except DunningError as exc:
            item.update({"error": exc.code, "message": exc.message})
            if isinstance(exc, TerminalPolicyViolation):
                item["status"] = exc.details.get("status")
            return item, {"payment_id": payment_id, "code": exc.code, "message": exc.message}
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Bulk retry of %s hit a database error", payment_id)
            item.update({"error": "database_error", "message": str(exc)})
            return item, {"payment_id": payment_id, "code": "database_error", "message": str(exc)}

        item.update(
            {
                "success": outcome.success,
                "status": outcome.failed_payment.status,
                "amount": outcome.amount,
                "failure_reason": outcome.failure_reason,
                "error_code": outcome.error_code,
            }
        )
        return item, None

    async def abandon_payment(
        self,
        failed_payment_id: UUID,
        organization_id: UUID,
        operator: Operator,
        request: AbandonRequest,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Give up on a record, optionally refunding part of it and cancelling the subscription."""
        now = now or utc_now()
        payment = self.get_failed_payment(failed_payment_id, organization_id)
        self.lifecycle.ensure_active(payment)

        amount = Decimal(str(payment.amount))
        refund_amount = Decimal("0")
        percentage: Decimal | None = None
        if request.refund_partial:
            if request.refund_amount is not None:
                refund_amount = request.refund_amount
            else:
                percentage = Decimal(settings.DEFAULT_REFUND_PERCENTAGE)
                refund_amount = (amount * percentage / 100).quantize(CENT, rounding=ROUND_HALF_UP)
            if refund_amount > amount:
                raise ValidationError("Refund amount cannot exceed the failed payment amount")

        async with self.lifecycle.claimed(payment, now):
            provider_refund_id = None
            if refund_amount > 0:
                refund = await self.gateway.refund(
                    payment.original_payment_id or str(payment.id),
                    refund_amount,
                    payment.currency,
                    {"failed_payment_id": str(payment.id)},
                )
                if not refund.success:
                    raise GatewayDeclineError(
                        "Refund was declined by the gateway",
                        failure_reason=refund.failure_reason or "refund_declined",
                    )
                provider_refund_id = refund.refund_id
                self.lifecycle.add_refund(
                    payment,
                    amount=refund_amount,
                    provider_refund_id=provider_refund_id,
                    percentage=percentage,
                )
            subscription_cancelled = self.lifecycle.mark_abandoned(
                payment,
                now,
                reason=request.reason,
                abandoned_by=operator.actor_id,
                cancel_subscription=request.cancel_subscription,
                internal_notes=request.internal_notes,
            )
            self.lifecycle.commit(payment)

        logger.info("Failed payment %s abandoned by %s", payment.id, operator.actor_id)
        self.audit.log(
            PAYMENT_ABANDONED,
            "failed_payment",
            payment.id,
            organization_id,
            operator,
            details={
                "reason": request.reason,
                "refund_amount": str(refund_amount),
                "subscription_cancelled": subscription_cancelled,
            },
        )
        if request.send_notification:
            await self._notify_customer(payment, "payment_abandoned", reason=request.reason)

        return {
            "message": "Payment marked as abandoned",
            "failed_payment": payment,
            "actions": {
                "refund_processed": refund_amount > 0,
                "refund_amount": refund_amount,
                "subscription_cancelled": subscription_cancelled,
            },
        }

    async def _notify_customer(self, payment: FailedPayment, template_name: str, **extra: Any) -> None:
        """Best-effort customer email; delivery problems are logged, not raised."""
        customer = self.lifecycle.get_customer(payment)
        if customer is None or not customer.email:
            logger.warning("Customer %s has no email, skipping %s", payment.customer_id, template_name)
            return
        try:
            await self.dispatcher.send(
                CHANNEL_EMAIL,
                DEFAULT_TEMPLATES[template_name],
                str(customer.email),
                template_variables(payment, customer.name, **extra),
            )
        except TransientInfraError as exc:
            logger.warning("Could not send %s to %s: %s", template_name, customer.email, exc)

    def get_timeline(self, payment: FailedPayment) -> tuple[list[FailedPaymentAttempt], list[dict[str, Any]]]:
        """Retry history plus a chronological event list rebuilt from stored rows."""
        attempts = self.repo.get_attempts(payment.id)
        events: list[dict[str, Any]] = [
            {
                "timestamp": payment.created_at,
                "event": "payment_failed",
                "description": f"Payment failed: {payment.failure_reason or 'unknown reason'}",
                "amount": payment.amount,
                "details": {"error_code": payment.error_code},
            }
        ]
        for attempt in attempts:
            events.append(
                {
                    "timestamp": attempt.attempted_at,
                    "event": _attempt_event(attempt),
                    "description": _attempt_description(attempt),
                    "amount": attempt.amount if attempt.action == StepAction.RETRY_PAYMENT.value else None,
                    "details": {
                        "sequence": attempt.sequence,
                        "campaign_step": attempt.campaign_step,
                        "retried_by": attempt.retried_by,
                        "failure_reason": attempt.failure_reason,
                        "bulk_retry": attempt.bulk_retry,
                    },
                }
            )
        for moved in self.repo.get_payments(payment.id):
            if Decimal(str(moved.amount)) < 0:
                events.append(
                    {
                        "timestamp": moved.created_at or payment.abandoned_at,
                        "event": "refund_processed",
                        "description": f"Partial refund of {-Decimal(str(moved.amount)):.2f}",
                        "amount": moved.amount,
                        "details": {"provider_payment_id": moved.provider_payment_id},
                    }
                )
        if payment.recovered_at:
            events.append(
                {
                    "timestamp": payment.recovered_at,
                    "event": "payment_recovered",
                    "description": f"Recovered via {payment.recovery_method}",
                    "amount": payment.amount,
                    "details": {"recovered_by": payment.recovered_by},
                }
            )
        if payment.abandoned_at:
            events.append(
                {
                    "timestamp": payment.abandoned_at,
                    "event": "payment_abandoned",
                    "description": f"Abandoned: {payment.abandonment_reason}",
                    "details": {"abandoned_by": payment.abandoned_by},
                }
            )
        events.sort(key=lambda e: _sortable(e["timestamp"]))
        return attempts, events


def _sortable(value: datetime | None) -> datetime:
    return as_utc(value) or datetime.min.replace(tzinfo=UTC)


def _attempt_event(attempt: FailedPaymentAttempt) -> str:
    outcome = "succeeded" if attempt.success else "failed"
    return {
        StepAction.RETRY_PAYMENT.value: f"retry_{outcome}",
        StepAction.SEND_EMAIL.value: "email_sent" if attempt.success else "email_failed",
        StepAction.SEND_SMS.value: "sms_sent" if attempt.success else "sms_failed",
        StepAction.CANCEL_SUBSCRIPTION.value: "subscription_cancelled",
    }.get(attempt.action, attempt.action)


def _attempt_description(attempt: FailedPaymentAttempt) -> str:
    source = f"campaign step {attempt.campaign_step}" if attempt.campaign_step else "manual"
    if attempt.action == StepAction.RETRY_PAYMENT.value:
        if attempt.success:
            return f"Retry #{attempt.sequence} succeeded ({source})"
        return f"Retry #{attempt.sequence} failed: {attempt.failure_reason} ({source})"
    return f"{attempt.action.replace('_', ' ').capitalize()} ({source})"
