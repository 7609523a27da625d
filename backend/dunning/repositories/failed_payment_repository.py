"""FailedPayment repository for data access."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from dunning.core.sorting import apply_order_by
from dunning.models.failed_payment import ACTIVE_STATUSES, FailedPayment, FailedPaymentStatus
from dunning.models.failed_payment_attempt import FailedPaymentAttempt
from dunning.models.payment import Payment

SORTABLE_FIELDS = ("created_at", "amount", "status", "retry_attempts", "next_retry_at")


class FailedPaymentRepository:
    """Repository for FailedPayment and its retry history."""

    def __init__(self, db: Session):
        self.db = db

    def _filtered(
        self,
        organization_id: UUID,
        status: str | None = None,
        campaign_id: UUID | None = None,
        customer_id: UUID | None = None,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Any:
        query = self.db.query(FailedPayment).filter(
            FailedPayment.organization_id == organization_id
        )
        if status is not None:
            query = query.filter(FailedPayment.status == status)
        if campaign_id is not None:
            query = query.filter(FailedPayment.dunning_campaign_id == campaign_id)
        if customer_id is not None:
            query = query.filter(FailedPayment.customer_id == customer_id)
        if min_amount is not None:
            query = query.filter(FailedPayment.amount >= min_amount)
        if max_amount is not None:
            query = query.filter(FailedPayment.amount <= max_amount)
        if start_date is not None:
            query = query.filter(FailedPayment.created_at >= start_date)
        if end_date is not None:
            query = query.filter(FailedPayment.created_at <= end_date)
        return query

    def get_all(
        self,
        organization_id: UUID,
        skip: int = 0,
        limit: int = 100,
        order_by: str | None = None,
        **filters: Any,
    ) -> list[FailedPayment]:
        query = self._filtered(organization_id, **filters)
        query = apply_order_by(query, FailedPayment, order_by, allowed_fields=SORTABLE_FIELDS)
        return query.offset(skip).limit(limit).all()

    def count(self, organization_id: UUID, **filters: Any) -> int:
        return self._filtered(organization_id, **filters).count()

    def summary(self, organization_id: UUID, **filters: Any) -> dict[str, Any]:
        """Totals and per-status counts over the filtered set."""
        rows = (
            self._filtered(organization_id, **filters)
            .with_entities(
                FailedPayment.status,
                func.count(FailedPayment.id),
                func.coalesce(func.sum(FailedPayment.amount), 0),
            )
            .group_by(FailedPayment.status)
            .all()
        )
        distribution: dict[str, int] = {}
        total_count = 0
        total_amount = Decimal("0")
        recovered_count = 0
        recovered_amount = Decimal("0")
        for status, count, amount in rows:
            amount = Decimal(str(amount or 0))
            distribution[status] = int(count)
            total_count += int(count)
            total_amount += amount
            if status == FailedPaymentStatus.RECOVERED.value:
                recovered_count = int(count)
                recovered_amount = amount
        return {
            "total_count": total_count,
            "total_amount": total_amount,
            "recovered_count": recovered_count,
            "recovered_amount": recovered_amount,
            "recovery_rate": round(recovered_count / total_count * 100, 2) if total_count else 0.0,
            "status_distribution": distribution,
        }

    def get_by_id(self, failed_payment_id: UUID, organization_id: UUID) -> FailedPayment | None:
        return (
            self.db.query(FailedPayment)
            .filter(
                FailedPayment.id == failed_payment_id,
                FailedPayment.organization_id == organization_id,
            )
            .first()
        )

    def create(self, organization_id: UUID, fields: dict[str, Any]) -> FailedPayment:
        failed_payment = FailedPayment(organization_id=organization_id, **fields)
        self.db.add(failed_payment)
        self.db.commit()
        self.db.refresh(failed_payment)
        return failed_payment

    def get_candidates(
        self,
        organization_id: UUID,
        campaign_id: UUID,
        step_count: int,
        amount_threshold: Decimal,
        min_failure_count: int,
    ) -> list[FailedPayment]:
        """Active records a campaign may act on, filtered on stored columns only."""
        return (
            self.db.query(FailedPayment)
            .filter(
                FailedPayment.organization_id == organization_id,
                FailedPayment.status.in_(ACTIVE_STATUSES),
                FailedPayment.retry_attempts < step_count,
                or_(
                    FailedPayment.dunning_campaign_id.is_(None),
                    FailedPayment.dunning_campaign_id == campaign_id,
                ),
                FailedPayment.amount >= amount_threshold,
                FailedPayment.failure_count >= min_failure_count,
            )
            .order_by(FailedPayment.created_at.asc(), FailedPayment.id.asc())
            .all()
        )

    def claim(
        self,
        failed_payment: FailedPayment,
        now: datetime,
        lease_seconds: int,
    ) -> bool:
        """Compare-and-swap on ``version`` taking a processing lease.

        Succeeds only when nobody changed the record since it was loaded, it is
        still active, and no other worker holds an unexpired lease.
        """
        expected_version = failed_payment.version
        result = self.db.execute(
            update(FailedPayment)
            .where(
                FailedPayment.id == failed_payment.id,
                FailedPayment.version == expected_version,
                FailedPayment.status.in_(ACTIVE_STATUSES),
                or_(FailedPayment.locked_until.is_(None), FailedPayment.locked_until <= now),
            )
            .values(
                version=expected_version + 1,
                locked_until=now + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(failed_payment)
        return result.rowcount == 1

    def get_attempts(self, failed_payment_id: UUID) -> list[FailedPaymentAttempt]:
        return (
            self.db.query(FailedPaymentAttempt)
            .filter(FailedPaymentAttempt.failed_payment_id == failed_payment_id)
            .order_by(FailedPaymentAttempt.sequence.asc())
            .all()
        )

    def get_payments(self, failed_payment_id: UUID) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.failed_payment_id == failed_payment_id)
            .order_by(Payment.created_at.asc())
            .all()
        )

    def window_rows(
        self,
        organization_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[FailedPayment]:
        """Records created inside an analytics window."""
        return (
            self.db.query(FailedPayment)
            .filter(
                FailedPayment.organization_id == organization_id,
                FailedPayment.created_at >= start,
                FailedPayment.created_at <= end,
            )
            .all()
        )
