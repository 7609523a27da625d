"""DunningCampaign repository for data access."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from dunning.core.sorting import apply_order_by
from dunning.models.dunning_campaign import CampaignStatus, DunningCampaign
from dunning.models.dunning_campaign_execution import DunningCampaignExecution
from dunning.models.dunning_campaign_step import DunningCampaignStep
from dunning.models.failed_payment import FailedPayment, FailedPaymentStatus
from dunning.models.shared import as_utc


class DunningCampaignRepository:
    """Repository for DunningCampaign model."""

    def __init__(self, db: Session):
        self.db = db

    def _filtered(
        self,
        organization_id: UUID,
        status: str | None = None,
        campaign_type: str | None = None,
        search: str | None = None,
    ) -> Any:
        query = self.db.query(DunningCampaign).filter(
            DunningCampaign.organization_id == organization_id,
        )
        if status is not None:
            query = query.filter(DunningCampaign.status == status)
        if campaign_type is not None:
            query = query.filter(DunningCampaign.type == campaign_type)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    DunningCampaign.name.ilike(pattern),
                    DunningCampaign.description.ilike(pattern),
                )
            )
        return query

    def get_all(
        self,
        organization_id: UUID,
        skip: int = 0,
        limit: int = 100,
        status: str | None = None,
        campaign_type: str | None = None,
        search: str | None = None,
        order_by: str | None = None,
    ) -> list[DunningCampaign]:
        """Get dunning campaigns for an organization."""
        query = self._filtered(organization_id, status, campaign_type, search)
        query = apply_order_by(query, DunningCampaign, order_by)
        return query.offset(skip).limit(limit).all()

    def count(
        self,
        organization_id: UUID,
        status: str | None = None,
        campaign_type: str | None = None,
        search: str | None = None,
    ) -> int:
        """Count dunning campaigns matching the same filters as get_all."""
        return self._filtered(organization_id, status, campaign_type, search).count()

    def get_by_id(
        self,
        campaign_id: UUID,
        organization_id: UUID,
    ) -> DunningCampaign | None:
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.organization_id == organization_id,
            )
            .first()
        )

    def get_by_name(
        self,
        name: str,
        organization_id: UUID,
    ) -> DunningCampaign | None:
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.name == name,
                DunningCampaign.organization_id == organization_id,
            )
            .first()
        )

    def get_active(self, organization_id: UUID) -> list[DunningCampaign]:
        """Active campaigns in binding precedence order.

        Highest priority first, then oldest, then lowest id.
        """
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.organization_id == organization_id,
                DunningCampaign.status == CampaignStatus.ACTIVE.value,
            )
            .order_by(
                DunningCampaign.priority.desc(),
                DunningCampaign.created_at.asc(),
                DunningCampaign.id.asc(),
            )
            .all()
        )

    def get_steps(self, campaign_id: UUID) -> list[DunningCampaignStep]:
        return (
            self.db.query(DunningCampaignStep)
            .filter(DunningCampaignStep.dunning_campaign_id == campaign_id)
            .order_by(DunningCampaignStep.step_number.asc())
            .all()
        )

    def create(
        self,
        organization_id: UUID,
        fields: dict[str, Any],
        steps: list[dict[str, Any]],
    ) -> DunningCampaign:
        """Create a campaign together with its retry schedule."""
        campaign = DunningCampaign(organization_id=organization_id, **fields)
        self.db.add(campaign)
        self.db.flush()

        for step_data in steps:
            self.db.add(DunningCampaignStep(dunning_campaign_id=campaign.id, **step_data))

        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def update(
        self,
        campaign: DunningCampaign,
        fields: dict[str, Any],
        steps: list[dict[str, Any]] | None = None,
    ) -> DunningCampaign:
        """Apply field changes; replace the schedule when ``steps`` is given."""
        for key, value in fields.items():
            setattr(campaign, key, value)

        if steps is not None:
            self.db.query(DunningCampaignStep).filter(
                DunningCampaignStep.dunning_campaign_id == campaign.id,
            ).delete()
            self.db.flush()
            for step_data in steps:
                self.db.add(DunningCampaignStep(dunning_campaign_id=campaign.id, **step_data))

        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def create_execution(
        self,
        organization_id: UUID,
        campaign_id: UUID,
        started_at: datetime,
        counters: dict[str, Any],
        errors: list[dict[str, Any]],
        finished_at: datetime,
    ) -> DunningCampaignExecution:
        execution = DunningCampaignExecution(
            organization_id=organization_id,
            dunning_campaign_id=campaign_id,
            dry_run=False,
            started_at=started_at,
            finished_at=finished_at,
            errors=errors,
            **counters,
        )
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        return execution

    def get_executions(
        self,
        campaign_id: UUID,
        limit: int = 50,
    ) -> list[DunningCampaignExecution]:
        return (
            self.db.query(DunningCampaignExecution)
            .filter(DunningCampaignExecution.dunning_campaign_id == campaign_id)
            .order_by(DunningCampaignExecution.started_at.desc())
            .limit(limit)
            .all()
        )

    def metrics(self, campaign_id: UUID, organization_id: UUID) -> dict[str, Any]:
        """Recovery statistics for one campaign, derived from its bound records."""
        recovered = FailedPaymentStatus.RECOVERED.value
        abandoned = FailedPaymentStatus.ABANDONED.value

        row = (
            self.db.query(
                func.count(FailedPayment.id),
                func.coalesce(
                    func.sum(case((FailedPayment.status == recovered, 1), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(
                        case((FailedPayment.status == recovered, FailedPayment.amount), else_=0)
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(case((FailedPayment.status == abandoned, 1), else_=0)), 0
                ),
            )
            .filter(
                FailedPayment.dunning_campaign_id == campaign_id,
                FailedPayment.organization_id == organization_id,
            )
            .one()
        )
        total, recovered_count, recovered_amount, abandoned_count = row
        total = int(total or 0)
        recovered_count = int(recovered_count or 0)
        abandoned_count = int(abandoned_count or 0)

        recovery_pairs = (
            self.db.query(FailedPayment.created_at, FailedPayment.recovered_at)
            .filter(
                FailedPayment.dunning_campaign_id == campaign_id,
                FailedPayment.organization_id == organization_id,
                FailedPayment.status == recovered,
                FailedPayment.recovered_at.isnot(None),
            )
            .all()
        )
        average_hours = average_recovery_hours(recovery_pairs)

        executions = (
            self.db.query(
                func.count(DunningCampaignExecution.id),
                func.max(DunningCampaignExecution.started_at),
            )
            .filter(DunningCampaignExecution.dunning_campaign_id == campaign_id)
            .one()
        )

        return {
            "campaign_id": campaign_id,
            "total_executions": int(executions[0] or 0),
            "total_failed_payments": total,
            "active_payments": total - recovered_count - abandoned_count,
            "recovered_count": recovered_count,
            "recovered_amount": Decimal(str(recovered_amount or 0)),
            "abandoned_count": abandoned_count,
            "success_rate": round(recovered_count / total * 100, 2) if total else 0.0,
            "average_recovery_time_hours": average_hours,
            "last_execution_at": as_utc(executions[1]),
        }


def average_recovery_hours(
    pairs: list[tuple[datetime | None, datetime | None]],
) -> float | None:
    """Mean of recovered_at - created_at in hours, or None without recoveries."""
    durations = [
        (as_utc(recovered_at) - as_utc(created_at)).total_seconds() / 3600  # type: ignore[operator]
        for created_at, recovered_at in pairs
        if created_at is not None and recovered_at is not None
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 2)
