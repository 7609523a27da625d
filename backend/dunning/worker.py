import logging
from typing import Any
from uuid import UUID

from arq import cron

from dunning.core.auth import SYSTEM_OPERATOR
from dunning.core.database import SessionLocal, init_db
from dunning.models.organization import Organization
from dunning.models.shared import DEFAULT_ORGANIZATION_ID
from dunning.services.dunning_service import DunningService
from dunning.services.gateway import get_gateway
from dunning.services.notification_dispatcher import get_dispatcher
from dunning.services.retry_service import RecoveryService
from dunning.tasks import redis_settings

logger = logging.getLogger(__name__)


async def process_dunning_task(
    ctx: dict[str, Any],
    organization_id: str | None = None,
    campaign_id: str | None = None,
) -> int:
    """Background task: scan active dunning campaigns and execute due steps.

    Runs hourly for every organization. Returns the number of failed payments
    processed.
    """
    db = SessionLocal()
    try:
        if organization_id is not None:
            org_ids = [UUID(organization_id)]
        else:
            org_ids = [row.id for row in db.query(Organization.id).all()] or [
                DEFAULT_ORGANIZATION_ID
            ]

        service = DunningService(db, get_gateway(), get_dispatcher())
        total = 0
        for org_id in org_ids:
            result = await service.process(
                org_id,
                SYSTEM_OPERATOR,
                campaign_id=UUID(campaign_id) if campaign_id else None,
            )
            total += result["payments_processed"]
            if result["errors"]:
                logger.warning(
                    "Dunning scan for organization %s finished with %d error(s)",
                    org_id,
                    len(result["errors"]),
                )
        if total > 0:
            logger.info("Processed %d failed payments", total)
        return total
    finally:
        db.close()


async def bulk_retry_task(
    ctx: dict[str, Any],
    organization_id: str,
    payment_ids: list[str],
    batch_size: int | None = None,
    delay_between_batches: float | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    """Background task: run a bulk retry enqueued by an operator."""
    db = SessionLocal()
    try:
        service = RecoveryService(db, get_gateway(), get_dispatcher())
        result = await service.bulk_retry(
            [UUID(pid) for pid in payment_ids],
            UUID(organization_id),
            SYSTEM_OPERATOR,
            batch_size=batch_size,
            delay_between_batches=delay_between_batches,
            reason=reason,
        )
        logger.info("Bulk retry: %s", result["message"])
        summary: dict[str, Any] = result["summary"]
        return summary
    finally:
        db.close()


async def startup(ctx: dict[str, Any]) -> None:
    init_db()


class WorkerSettings:
    functions = [
        process_dunning_task,
        bulk_retry_task,
    ]
    cron_jobs = [
        cron(process_dunning_task, minute={0}),  # hourly
    ]
    redis_settings = redis_settings
    on_startup = startup
