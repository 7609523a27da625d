"""Read-only recovery statistics per campaign and over rolling windows."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from dunning.core.exceptions import ValidationError
from dunning.models.dunning_campaign import DunningCampaign
from dunning.models.dunning_campaign_execution import DunningCampaignExecution
from dunning.models.failed_payment import ACTIVE_STATUSES, FailedPayment, FailedPaymentStatus
from dunning.models.shared import as_utc, utc_now
from dunning.repositories.dunning_campaign_repository import (
    DunningCampaignRepository,
    average_recovery_hours,
)
from dunning.repositories.failed_payment_repository import FailedPaymentRepository

PERIODS: dict[str, timedelta] = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

TOP_CAMPAIGNS_LIMIT = 5


class MetricsService:
    def __init__(self, db: Session):
        self.db = db
        self.campaign_repo = DunningCampaignRepository(db)
        self.repo = FailedPaymentRepository(db)

    def campaign_metrics(self, campaign: DunningCampaign) -> dict[str, Any]:
        metrics = self.campaign_repo.metrics(campaign.id, campaign.organization_id)
        metrics["campaign_name"] = campaign.name
        return metrics

    def aggregate(self, metrics: list[dict[str, Any]]) -> dict[str, Any]:
        """Sum per-campaign metrics into the list view summary."""
        total_failed = sum(m["total_failed_payments"] for m in metrics)
        total_recovered = sum(m["recovered_count"] for m in metrics)
        return {
            "total_executions": sum(m["total_executions"] for m in metrics),
            "total_failed_payments": total_failed,
            "total_recovered_payments": total_recovered,
            "total_recovered_amount": sum(
                (m["recovered_amount"] for m in metrics), Decimal("0")
            ),
            "overall_success_rate": (
                round(total_recovered / total_failed * 100, 2) if total_failed else 0.0
            ),
        }

    def analytics(
        self,
        organization_id: UUID,
        period: str = "30d",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Recovery statistics for records created within ``period`` before ``now``."""
        if period not in PERIODS:
            raise ValidationError(
                f"Invalid period '{period}'. Use one of: {', '.join(PERIODS)}"
            )
        end = now or utc_now()
        start = end - PERIODS[period]
        rows = self.repo.window_rows(organization_id, start, end)

        distribution = Counter(r.status for r in rows)
        recovered = [r for r in rows if r.status == FailedPaymentStatus.RECOVERED.value]
        total = len(rows)

        metrics = {
            "total_failed_payments": total,
            "total_failed_amount": sum((Decimal(str(r.amount)) for r in rows), Decimal("0")),
            "recovered_payments": len(recovered),
            "recovered_amount": sum((Decimal(str(r.amount)) for r in recovered), Decimal("0")),
            "abandoned_payments": distribution.get(FailedPaymentStatus.ABANDONED.value, 0),
            "active_payments": sum(distribution.get(s, 0) for s in ACTIVE_STATUSES),
            "recovery_rate": round(len(recovered) / total * 100, 2) if total else 0.0,
            "average_recovery_time_hours": average_recovery_hours(
                [(r.created_at, r.recovered_at) for r in recovered]
            ),
        }

        return {
            "period": period,
            "date_range": {"start": start, "end": end},
            "metrics": metrics,
            "status_distribution": dict(distribution),
            "top_campaigns": self._top_campaigns(organization_id, rows, start, end),
        }

    def _top_campaigns(
        self,
        organization_id: UUID,
        rows: list[FailedPayment],
        start: datetime,
        end: datetime,
    ) -> list[dict[str, Any]]:
        by_campaign: dict[UUID, list[FailedPayment]] = {}
        for row in rows:
            if row.dunning_campaign_id is not None:
                by_campaign.setdefault(row.dunning_campaign_id, []).append(row)

        results = []
        for campaign_id, payments in by_campaign.items():
            campaign = self.campaign_repo.get_by_id(campaign_id, organization_id)
            recovered = [p for p in payments if p.status == FailedPaymentStatus.RECOVERED.value]
            abandoned = sum(1 for p in payments if p.status == FailedPaymentStatus.ABANDONED.value)
            executions, last_execution = (
                self.db.query(
                    func.count(DunningCampaignExecution.id),
                    func.max(DunningCampaignExecution.started_at),
                )
                .filter(
                    DunningCampaignExecution.dunning_campaign_id == campaign_id,
                    DunningCampaignExecution.started_at >= start,
                    DunningCampaignExecution.started_at <= end,
                )
                .one()
            )
            results.append(
                {
                    "campaign_id": campaign_id,
                    "campaign_name": campaign.name if campaign else None,
                    "total_executions": int(executions or 0),
                    "total_failed_payments": len(payments),
                    "active_payments": len(payments) - len(recovered) - abandoned,
                    "recovered_count": len(recovered),
                    "recovered_amount": sum(
                        (Decimal(str(p.amount)) for p in recovered), Decimal("0")
                    ),
                    "abandoned_count": abandoned,
                    "success_rate": round(len(recovered) / len(payments) * 100, 2),
                    "average_recovery_time_hours": average_recovery_hours(
                        [(p.created_at, p.recovered_at) for p in recovered]
                    ),
                    "last_execution_at": as_utc(last_execution),
                }
            )

        results.sort(key=lambda m: (-m["recovered_amount"], -m["success_rate"]))
        return results[:TOP_CAMPAIGNS_LIMIT]
