"""Failed-payment state machine.

    pending -> retrying -> {recovered, abandoned}

Every mutation runs inside ``FailedPaymentLifecycle.claimed``: a per-record
in-process lock plus a compare-and-swap claim on ``version`` with a
``locked_until`` lease, so a campaign scan and an operator retry can never
charge the same record twice. Terminal records reject every mutation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dunning.core.config import settings
from dunning.core.exceptions import ConcurrencyConflictError, TerminalPolicyViolation
from dunning.models.customer import AccessLevel, Customer
from dunning.models.failed_payment import (
    TERMINAL_STATUSES,
    FailedPayment,
    FailedPaymentStatus,
)
from dunning.models.failed_payment_attempt import FailedPaymentAttempt
from dunning.models.payment import Payment, PaymentKind, PaymentStatus
from dunning.models.payment_method import PaymentMethod
from dunning.models.shared import generate_uuid
from dunning.models.subscription import (
    Subscription,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from dunning.repositories.customer_repository import CustomerRepository
from dunning.repositories.failed_payment_repository import FailedPaymentRepository

logger = logging.getLogger(__name__)

ABANDON_SCHEDULE_EXHAUSTED = "retry_schedule_exhausted"
ABANDON_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
ABANDON_MAX_MANUAL_RETRIES = "Maximum retry attempts exceeded"


class RecordLockRegistry:
    """In-process mutual exclusion per failed payment id.

    A second caller does not wait: it gets a ConcurrencyConflictError at once.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def is_locked(self, record_id: UUID) -> bool:
        lock = self._locks.get(record_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, record_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(record_id, asyncio.Lock())
        if lock.locked():
            raise ConcurrencyConflictError(
                f"Failed payment {record_id} is being processed by another request",
                details={"failed_payment_id": str(record_id)},
            )
        async with lock:
            try:
                yield
            finally:
                self._locks.pop(record_id, None)


record_locks = RecordLockRegistry()


class FailedPaymentLifecycle:
    """Claims records and applies state transitions to them.

    Transition methods only change objects in the session; ``commit`` writes
    FailedPayment, its attempt rows, Subscription and Customer changes at once.
    """

    def __init__(self, db: Session, lease_seconds: int | None = None):
        self.db = db
        self.repo = FailedPaymentRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else settings.CLAIM_LEASE_SECONDS
        )

    @staticmethod
    def ensure_active(payment: FailedPayment) -> None:
        if payment.status in TERMINAL_STATUSES:
            raise TerminalPolicyViolation(
                f"Failed payment {payment.id} is already {payment.status}",
                details={"failed_payment_id": str(payment.id), "status": payment.status},
            )

    @asynccontextmanager
    async def claimed(self, payment: FailedPayment, now: datetime) -> AsyncIterator[FailedPayment]:
        """Hold the record for the duration of one mutation.

        Raises TerminalPolicyViolation when the record is terminal and
        ConcurrencyConflictError when another writer holds or changed it.
        The lease is released when the body raises.
        """
        async with record_locks.hold(payment.id):
            self.db.refresh(payment)
            self.ensure_active(payment)
            if not self.repo.claim(payment, now, self.lease_seconds):
                self.ensure_active(payment)
                raise ConcurrencyConflictError(
                    f"Failed payment {payment.id} was modified or claimed concurrently",
                    details={"failed_payment_id": str(payment.id)},
                )
            try:
                yield payment
            except BaseException:
                self.release(payment)
                raise

    def release(self, payment: FailedPayment) -> None:
        """Drop the processing lease without any other change."""
        self.db.rollback()
        self.db.refresh(payment)
        if payment.locked_until is None:
            return
        payment.locked_until = None
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.warning(
                "Could not release lease on failed payment %s; it expires in %ss",
                payment.id,
                self.lease_seconds,
            )

    def commit(self, payment: FailedPayment) -> None:
        payment.locked_until = None
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflictError(
                f"Failed payment {payment.id} was modified concurrently",
                details={"failed_payment_id": str(payment.id)},
            ) from None
        self.db.refresh(payment)

    def bind(self, payment: FailedPayment, campaign_id: UUID) -> None:
        """Persist a campaign binding chosen by a scan."""
        self.ensure_active(payment)
        payment.dunning_campaign_id = campaign_id
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflictError(
                f"Failed payment {payment.id} was modified concurrently",
                details={"failed_payment_id": str(payment.id)},
            ) from None

    def resolve_payment_method(self, payment: FailedPayment) -> str | None:
        """The record's own payment method, else the customer's default."""
        if payment.payment_method_id:
            return str(payment.payment_method_id)
        default = self.customer_repo.get_default_payment_method(
            payment.customer_id, payment.organization_id
        )
        if default is None:
            return None
        return str(default.provider_payment_method_id)

    def get_customer(self, payment: FailedPayment) -> Customer | None:
        return self.customer_repo.get_by_id(payment.customer_id, payment.organization_id)

    def get_subscription(self, payment: FailedPayment) -> Subscription | None:
        if payment.subscription_id is None:
            return None
        return self.customer_repo.get_subscription(payment.subscription_id, payment.organization_id)

    def gateway_metadata(self, payment: FailedPayment, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "failed_payment_id": str(payment.id),
            "retry_attempt": payment.retry_attempts + 1,
        }
        customer = self.get_customer(payment)
        if customer is not None and customer.billing_metadata:
            provider_customer = customer.billing_metadata.get("stripe_customer_id")
            if provider_customer:
                metadata["provider_customer_id"] = provider_customer
        metadata.update({k: v for k, v in extra.items() if v is not None})
        return metadata

    def append_attempt(
        self,
        payment: FailedPayment,
        now: datetime,
        *,
        action: str,
        success: bool,
        amount: Decimal | None = None,
        **fields: Any,
    ) -> FailedPaymentAttempt:
        """Append to the retry history; every appended row consumes one slot."""
        attempt = FailedPaymentAttempt(
            failed_payment_id=payment.id,
            sequence=payment.retry_attempts + 1,
            attempted_at=now,
            action=action,
            amount=amount if amount is not None else Decimal("0"),
            success=success,
            **fields,
        )
        self.db.add(attempt)
        payment.retry_attempts = payment.retry_attempts + 1
        payment.last_retry_at = now
        if payment.status == FailedPaymentStatus.PENDING.value:
            payment.status = FailedPaymentStatus.RETRYING.value
        return attempt

    def mark_recovered(
        self,
        payment: FailedPayment,
        now: datetime,
        *,
        amount: Decimal,
        provider_payment_id: str | None,
        payment_method_id: str | None,
        recovery_method: str,
        recovered_by: str | None,
    ) -> Payment:
        """Terminal success: record the Payment and bring the account current."""
        recovered = Payment(
            id=generate_uuid(),
            organization_id=payment.organization_id,
            customer_id=payment.customer_id,
            subscription_id=payment.subscription_id,
            failed_payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            status=PaymentStatus.SUCCEEDED.value,
            kind=PaymentKind.RECOVERY.value,
            provider_payment_id=provider_payment_id,
            payment_method_id=payment_method_id,
            payment_metadata={"recovery_method": recovery_method},
        )
        self.db.add(recovered)

        payment.status = FailedPaymentStatus.RECOVERED.value
        payment.recovered_at = now
        payment.recovered_payment_id = recovered.id
        payment.recovery_method = recovery_method
        payment.recovered_by = recovered_by
        payment.next_retry_at = None

        subscription = self.get_subscription(payment)
        if subscription is not None:
            subscription.payment_status = SubscriptionPaymentStatus.CURRENT.value
            subscription.last_payment_at = now
            if subscription.status == SubscriptionStatus.PAST_DUE.value:
                subscription.status = SubscriptionStatus.ACTIVE.value

        customer = self.get_customer(payment)
        if customer is not None:
            customer.access_level = AccessLevel.FULL.value
            if customer.subscription_status == SubscriptionStatus.PAST_DUE.value:
                customer.subscription_status = SubscriptionStatus.ACTIVE.value
        return recovered

    def mark_abandoned(
        self,
        payment: FailedPayment,
        now: datetime,
        *,
        reason: str,
        abandoned_by: str | None,
        cancel_subscription: bool = False,
        internal_notes: str | None = None,
    ) -> bool:
        """Terminal give-up. Returns True when a subscription was cancelled."""
        payment.status = FailedPaymentStatus.ABANDONED.value
        payment.abandoned_at = now
        payment.abandonment_reason = reason
        payment.abandoned_by = abandoned_by
        payment.next_retry_at = None
        if internal_notes:
            payment.internal_notes = internal_notes

        if not cancel_subscription:
            return False

        cancelled = False
        subscription = self.get_subscription(payment)
        if subscription is not None and subscription.status != SubscriptionStatus.CANCELED.value:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = now
            subscription.cancellation_reason = reason
            cancelled = True

        customer = self.get_customer(payment)
        if customer is not None:
            customer.access_level = AccessLevel.LIMITED.value
            customer.subscription_status = SubscriptionStatus.CANCELED.value
        return cancelled

    def add_refund(
        self,
        payment: FailedPayment,
        *,
        amount: Decimal,
        provider_refund_id: str | None,
        percentage: Decimal | None,
    ) -> Payment:
        refund = Payment(
            id=generate_uuid(),
            organization_id=payment.organization_id,
            customer_id=payment.customer_id,
            subscription_id=payment.subscription_id,
            failed_payment_id=payment.id,
            amount=-amount,
            currency=payment.currency,
            status=PaymentStatus.REFUNDED.value,
            kind=PaymentKind.REFUND.value,
            provider_payment_id=provider_refund_id,
            payment_metadata={
                "refund_type": "partial_abandonment",
                "refund_percentage": str(percentage) if percentage is not None else None,
            },
        )
        self.db.add(refund)
        return refund

    def make_default_payment_method(self, payment: FailedPayment, provider_method_id: str) -> None:
        """Promote an existing saved method to the customer's default."""
        methods = (
            self.db.query(PaymentMethod)
            .filter(
                PaymentMethod.customer_id == payment.customer_id,
                PaymentMethod.organization_id == payment.organization_id,
            )
            .all()
        )
        if not any(m.provider_payment_method_id == provider_method_id for m in methods):
            logger.info(
                "Payment method %s is not saved for customer %s; default unchanged",
                provider_method_id,
                payment.customer_id,
            )
            return
        for method in methods:
            method.is_default = method.provider_payment_method_id == provider_method_id
