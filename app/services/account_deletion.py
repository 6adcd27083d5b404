"""
Account Deletion - request, cancel and finalize after the grace period.

The finalizer is a job handler. Each invocation ends in exactly one of:
- JobCompleted: finalized, or skipped (user_not_found | already_deleted | not_scheduled)
- JobRescheduled: not_due (run again at scheduled_for) or blocked_last_admin
  (run again after the retry delay); a deferral, not a failure
- JobFailed: infrastructure error; the queue retries with backoff

Redelivery is safe: finalizing twice degrades to skipped/already_deleted.
"""

from datetime import datetime, timedelta
from typing import Protocol, assert_never
from uuid import UUID

from structlog import get_logger

from app.clock import Clock
from app.db.repository import IdentityRepository
from app.exceptions import UserNotFoundError
from app.models.domain import (
    AccountFinalized,
    CancelDeletionResult,
    DeletionRequestResult,
    FinalizeBlockedLastAdmin,
    FinalizeJobResult,
    FinalizeNotDue,
    FinalizeSkipped,
    JobCompleted,
    JobFailed,
    JobOutcome,
    JobRescheduled,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import audit_trace_id, trace_operation

logger = get_logger(__name__)

FINALIZE_JOB_NAME = "finalize_account_deletion"


def finalize_job_id(user_id: UUID) -> str:
    """Stable job id, so re-requesting never enqueues a duplicate finalize."""
    return f"users.{FINALIZE_JOB_NAME}-{user_id}"


class AccountDeletionScheduler(Protocol):
    async def schedule_finalize(self, user_id: UUID, run_at: datetime) -> None: ...

    async def cancel_finalize(self, user_id: UUID) -> None: ...


class AccountDeletionService:
    """
    Self-service deletion requests.

    Usage:
        service = AccountDeletionService(repo, scheduler, clock, grace_period_days=30)
        result = await service.request_account_deletion(user_id, session_id)
    """

    def __init__(
        self,
        repository: IdentityRepository,
        scheduler: AccountDeletionScheduler,
        clock: Clock,
        grace_period_days: int,
    ) -> None:
        self._repo = repository
        self._scheduler = scheduler
        self._clock = clock
        self.grace_period = timedelta(days=grace_period_days)

    async def request_account_deletion(
        self, user_id: UUID, session_id: UUID, trace_id: str | None = None
    ) -> DeletionRequestResult:
        """
        Schedule finalize at now + grace period.

        Idempotent: a second request returns the original schedule. The sole
        ACTIVE ADMIN gets kind="blocked_last_admin" and nothing is scheduled.
        """
        trace_id = audit_trace_id(trace_id)
        now = self._clock.now()
        result = await self._repo.request_account_deletion(
            user_id, session_id, trace_id, now, now + self.grace_period
        )

        if result.kind == "not_found":
            raise UserNotFoundError(user_id)
        if result.kind == "blocked_last_admin":
            metrics.record_admin_invariant_block("request_account_deletion")
            logger.warning("account_deletion_request_blocked_last_admin", user_id=str(user_id))
            return result

        assert result.scheduled_for is not None
        await self._scheduler.schedule_finalize(user_id, result.scheduled_for)
        logger.info(
            "account_deletion_requested",
            user_id=str(user_id),
            outcome=result.kind,
            scheduled_for=result.scheduled_for.isoformat(),
            trace_id=trace_id,
        )
        return result

    async def cancel_account_deletion(
        self, user_id: UUID, session_id: UUID, trace_id: str | None = None
    ) -> CancelDeletionResult:
        trace_id = audit_trace_id(trace_id)
        result = await self._repo.cancel_account_deletion(
            user_id, session_id, trace_id, self._clock.now()
        )

        if result == "not_found":
            raise UserNotFoundError(user_id)
        elif result == "canceled":
            logger.info("account_deletion_canceled", user_id=str(user_id), trace_id=trace_id)
        elif result == "not_scheduled":
            pass
        else:
            assert_never(result)

        # Also clears a job left behind by an earlier cancel that failed midway
        await self._scheduler.cancel_finalize(user_id)
        return result


class AccountDeletionFinalizer:
    """
    Job handler that finalizes a due account deletion.

    Usage:
        finalizer = AccountDeletionFinalizer(repo, clock, timedelta(hours=24))
        outcome = await finalizer.finalize(user_id, job_id="users.finalize_account_deletion-...")
    """

    def __init__(
        self,
        repository: IdentityRepository,
        clock: Clock,
        blocked_last_admin_retry: timedelta = timedelta(hours=24),
    ) -> None:
        self._repo = repository
        self._clock = clock
        self.blocked_last_admin_retry = blocked_last_admin_retry

    async def finalize(self, user_id: UUID, job_id: str) -> JobOutcome:
        with (
            log_context(user_id=str(user_id), job_id=job_id),
            trace_operation(FINALIZE_JOB_NAME, user_id=str(user_id), job_id=job_id) as span,
        ):
            now = self._clock.now()
            try:
                result = await self._repo.finalize_account_deletion(
                    user_id, now, fallback_trace_id=f"job:{job_id}"
                )
            except Exception as e:
                metrics.record_deletion_finalize("failed", type(e).__name__)
                metrics.record_error(type(e).__name__, FINALIZE_JOB_NAME)
                logger.exception("account_deletion_finalize_failed", error=str(e))
                return JobFailed(error=e)

            outcome: JobOutcome
            if isinstance(result, FinalizeSkipped):
                outcome = JobCompleted(
                    FinalizeJobResult(user_id=user_id, outcome="skipped", reason=result.reason)
                )
                metrics.record_deletion_finalize("skipped", result.reason)
                logger.info("account_deletion_finalize_skipped", reason=result.reason)
            elif isinstance(result, FinalizeNotDue):
                outcome = self._reschedule(user_id, result.scheduled_for, "not_due")
                logger.info(
                    "account_deletion_not_due",
                    scheduled_for=result.scheduled_for.isoformat(),
                )
            elif isinstance(result, FinalizeBlockedLastAdmin):
                outcome = self._reschedule(
                    user_id, now + self.blocked_last_admin_retry, "blocked_last_admin"
                )
                metrics.record_admin_invariant_block(FINALIZE_JOB_NAME)
                logger.warning(
                    "account_deletion_blocked_last_admin",
                    retry_at=(now + self.blocked_last_admin_retry).isoformat(),
                )
            elif isinstance(result, AccountFinalized):
                outcome = JobCompleted(
                    FinalizeJobResult(
                        user_id=user_id, outcome="finalized", deleted_at=result.deleted_at
                    )
                )
                metrics.record_deletion_finalize("finalized")
                metrics.record_session_revoked("account_deleted")
                logger.info("account_deletion_finalized", deleted_at=result.deleted_at.isoformat())
            else:
                assert_never(result)

            span.set_attribute("outcome", type(result).__name__)
            return outcome

    def _reschedule(self, user_id: UUID, at: datetime, reason: str) -> JobRescheduled:
        metrics.record_deletion_finalize("rescheduled", reason)
        return JobRescheduled(
            at=at,
            result=FinalizeJobResult(
                user_id=user_id, outcome="rescheduled", reason=reason, rescheduled_until=at
            ),
        )
