"""
Queue client for enqueuing arq jobs.

Provides a simple interface for adding and removing jobs on the arq queue.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import (
    default_queue_name,
    in_progress_key_prefix,
    job_key_prefix,
    result_key_prefix,
)
from structlog import get_logger

from app.config import settings
from app.services.account_deletion import FINALIZE_JOB_NAME, finalize_job_id

logger = get_logger(__name__)

# Global pool instance (created on first use)
_pool: ArqRedis | None = None


async def get_queue() -> ArqRedis:
    """Get or create the arq Redis connection pool."""
    global _pool
    if _pool is None:
        _pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
        logger.info("arq_pool_created")
    return _pool


async def enqueue_job(
    function_name: str,
    *args: Any,
    _job_id: str | None = None,
    _defer_until: datetime | None = None,
    **kwargs: Any,
) -> str | None:
    """
    Enqueue a job to the arq worker.

    Returns:
        Job ID, or None when a job with the same id is already queued

    Example:
        await enqueue_job("finalize_account_deletion", str(user_id), _defer_until=at)
    """
    pool = await get_queue()
    try:
        job = await pool.enqueue_job(
            function_name,
            *args,
            _job_id=_job_id,
            _defer_until=_defer_until,
            **kwargs,
        )
    except Exception as e:
        logger.error(
            "job_enqueue_error",
            function=function_name,
            job_id=_job_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    if job is None:
        logger.info("job_already_enqueued", function=function_name, job_id=_job_id)
        return None

    logger.debug("job_enqueued", function=function_name, job_id=job.job_id)
    return job.job_id


async def remove_job(job_id: str) -> bool:
    """
    Remove a queued (not yet running) job and any stored result for its id.

    A job that is already running is left alone; returns False in that case
    and when no job was queued.
    """
    pool = await get_queue()
    if await pool.exists(in_progress_key_prefix + job_id):
        logger.info("job_remove_skipped_in_progress", job_id=job_id)
        return False

    async with pool.pipeline(transaction=True) as pipe:
        pipe.zrem(default_queue_name, job_id)
        pipe.delete(job_key_prefix + job_id, result_key_prefix + job_id)
        removed, _ = await pipe.execute()

    if removed:
        logger.debug("job_removed", job_id=job_id)
    return bool(removed)


async def close_queue() -> None:
    """Close arq Redis connection pool (call on shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("arq_pool_closed")


class ArqAccountDeletionScheduler:
    """AccountDeletionScheduler backed by the arq queue."""

    async def schedule_finalize(self, user_id: UUID, run_at: datetime) -> None:
        job_id = finalize_job_id(user_id)
        # The id must be reusable across request/cancel cycles
        await remove_job(job_id)
        await enqueue_job(FINALIZE_JOB_NAME, str(user_id), _job_id=job_id, _defer_until=run_at)

    async def cancel_finalize(self, user_id: UUID) -> None:
        await remove_job(finalize_job_id(user_id))
