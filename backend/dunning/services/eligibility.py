"""Selects the failed payments each campaign acts on and resolves bindings."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.models.dunning_campaign import DunningCampaign
from dunning.models.failed_payment import FailedPayment
from dunning.models.shared import as_utc
from dunning.models.subscription import Subscription, SubscriptionStatus
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.repositories.failed_payment_repository import FailedPaymentRepository

logger = logging.getLogger(__name__)


def campaign_precedence(campaign: DunningCampaign) -> tuple[int, datetime, str]:
    """Sort key: highest priority, then earliest created, then lowest id."""
    return (-int(campaign.priority), as_utc(campaign.created_at), str(campaign.id))  # type: ignore[return-value]


def matches_conditions(
    payment: FailedPayment,
    conditions: dict[str, Any],
    subscription: Subscription | None,
    now: datetime,
) -> bool:
    """Trigger predicates that depend on time or the subscription."""
    min_days = int(conditions.get("min_days_since_failure") or 0)
    if min_days and now - as_utc(payment.created_at) < timedelta(days=min_days):  # type: ignore[operator]
        return False

    locked_until = as_utc(payment.locked_until)
    if locked_until is not None and locked_until > now:
        return False

    if conditions.get("exclude_trial_users") and (
        subscription is not None and subscription.status == SubscriptionStatus.TRIALING.value
    ):
        return False

    whitelist = conditions.get("plan_whitelist") or []
    if whitelist and (subscription is None or subscription.plan_code not in whitelist):
        return False

    return True


class EligibilityFilter:
    """Read-only: nothing here writes to the database."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = FailedPaymentRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)

    def _subscriptions(self, payments: list[FailedPayment]) -> dict[UUID, Subscription]:
        ids = {p.subscription_id for p in payments if p.subscription_id is not None}
        if not ids:
            return {}
        rows = self.db.query(Subscription).filter(Subscription.id.in_(ids)).all()
        return {s.id: s for s in rows}

    def find_eligible(
        self,
        campaign: DunningCampaign,
        now: datetime,
        step_count: int | None = None,
    ) -> list[FailedPayment]:
        """Active records that are unbound or bound to ``campaign`` and match its conditions."""
        if step_count is None:
            step_count = len(self.campaign_repo.get_steps(campaign.id))
        if step_count == 0:
            return []

        conditions = campaign.trigger_conditions or {}
        candidates = self.repo.get_candidates(
            organization_id=campaign.organization_id,
            campaign_id=campaign.id,
            step_count=step_count,
            amount_threshold=Decimal(str(conditions.get("amount_threshold") or 0)),
            min_failure_count=int(conditions.get("min_failure_count") or 0),
        )
        subscriptions = self._subscriptions(candidates)
        return [
            p
            for p in candidates
            if matches_conditions(
                p,
                conditions,
                subscriptions.get(p.subscription_id) if p.subscription_id else None,
                now,
            )
        ]

    def resolve_bindings(
        self,
        campaigns: list[DunningCampaign],
        now: datetime,
    ) -> dict[UUID, list[FailedPayment]]:
        """Assign every eligible record to exactly one campaign.

        Bound records stay with their campaign. An unbound record matching
        several campaigns goes to the first in precedence order.
        """
        assignments: dict[UUID, list[FailedPayment]] = {c.id: [] for c in campaigns}
        assigned: set[UUID] = set()
        for campaign in sorted(campaigns, key=campaign_precedence):
            for payment in self.find_eligible(campaign, now):
                if payment.id in assigned:
                    continue
                assigned.add(payment.id)
                assignments[campaign.id].append(payment)
        logger.debug(
            "Resolved %d eligible failed payments across %d campaigns",
            len(assigned),
            len(campaigns),
        )
        return assignments
