"""Account deletion background jobs for arq worker."""

from datetime import datetime
from typing import Any, assert_never
from uuid import UUID

from arq import Retry
from structlog import get_logger

from app.models.domain import JobCompleted, JobFailed, JobOutcome, JobRescheduled
from app.services.account_deletion import FINALIZE_JOB_NAME, finalize_job_id
from app.tasks.queue import enqueue_job

logger = get_logger(__name__)


def rescheduled_job_id(user_id: UUID, at: datetime) -> str:
    """Follow-up id carrying its target time, so it never collides with the running job."""
    return f"{finalize_job_id(user_id)}-{int(at.timestamp() * 1000)}"


async def finalize_account_deletion(ctx: dict[str, Any], user_id: str) -> dict[str, Any]:
    """
    Background task to finalize a due account deletion.

    Args:
        ctx: ARQ context dict (carries the wired IdentityServices)
        user_id: ID of the user whose deletion was requested

    Returns:
        Result payload: {ok, user_id, outcome, reason?, deleted_at?, rescheduled_until?}

    Raises:
        Retry: infrastructure failure (retried with backoff up to max_tries)
    """
    job_id = ctx.get("job_id") or finalize_job_id(UUID(user_id))
    outcome = await ctx["services"].deletion_finalizer.finalize(UUID(user_id), job_id)
    return await apply_job_outcome(ctx, outcome)


async def apply_job_outcome(ctx: dict[str, Any], outcome: JobOutcome) -> dict[str, Any]:
    """Translate a finalizer outcome into arq semantics."""
    if isinstance(outcome, JobCompleted):
        return outcome.result.to_payload()
    elif isinstance(outcome, JobRescheduled):
        user_id = outcome.result.user_id
        follow_up_id = rescheduled_job_id(user_id, outcome.at)
        if follow_up_id == ctx.get("job_id"):
            # Fired before its own deadline; let arq re-defer this very job
            delay = (outcome.at - ctx["services"].clock.now()).total_seconds()
            raise Retry(defer=max(1.0, delay))

        await enqueue_job(
            FINALIZE_JOB_NAME,
            str(user_id),
            _job_id=follow_up_id,
            _defer_until=outcome.at,
        )
        logger.info(
            "account_deletion_finalize_rescheduled",
            user_id=str(user_id),
            reason=outcome.result.reason,
            job_id=follow_up_id,
            run_at=outcome.at.isoformat(),
        )
        return outcome.result.to_payload()
    elif isinstance(outcome, JobFailed):
        logger.error(
            "account_deletion_finalize_retry",
            job_try=ctx["job_try"],
            error=str(outcome.error),
            error_type=type(outcome.error).__name__,
        )
        # Retry with backoff (5s, 10s, 15s, ...)
        raise Retry(defer=ctx["job_try"] * 5) from outcome.error
    else:
        assert_never(outcome)
