from typing import Any
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from dunning.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq
    """
    pool = await get_redis_pool()
    try:
        job = await pool.enqueue_job(task_name, *args, **kwargs)
        return job  # type: ignore[return-value]
    finally:
        await pool.close()


async def enqueue_process_dunning(
    organization_id: UUID | None = None,
    campaign_id: UUID | None = None,
) -> Job:
    """Enqueue a campaign scan for one organization, or for all of them."""
    return await enqueue_task(
        "process_dunning_task",
        str(organization_id) if organization_id else None,
        str(campaign_id) if campaign_id else None,
    )


async def enqueue_bulk_retry(
    organization_id: UUID,
    payment_ids: list[UUID],
    batch_size: int | None = None,
    delay_between_batches: float | None = None,
    reason: str | None = None,
) -> Job:
    """Enqueue a bulk retry to run outside the request cycle."""
    return await enqueue_task(
        "bulk_retry_task",
        str(organization_id),
        [str(pid) for pid in payment_ids],
        batch_size,
        delay_between_batches,
        reason,
    )
