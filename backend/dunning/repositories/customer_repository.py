"""Repository for the customer side of a failed payment."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from dunning.models.customer import Customer
from dunning.models.payment_method import PaymentMethod
from dunning.models.subscription import Subscription


class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, customer_id: UUID, organization_id: UUID) -> Customer | None:
        return (
            self.db.query(Customer)
            .filter(
                Customer.id == customer_id,
                Customer.organization_id == organization_id,
            )
            .first()
        )

    def get_subscription(
        self, subscription_id: UUID, organization_id: UUID
    ) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.organization_id == organization_id,
            )
            .first()
        )

    def get_default_payment_method(
        self, customer_id: UUID, organization_id: UUID
    ) -> PaymentMethod | None:
        return (
            self.db.query(PaymentMethod)
            .filter(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.organization_id == organization_id,
                PaymentMethod.is_default.is_(True),
            )
            .first()
        )
