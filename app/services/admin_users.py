"""
Admin Users - guarded role and status changes.

Every change runs in one serializable transaction holding locks on all
ACTIVE ADMIN rows, so the system can never be left without an active admin.
A blocked change is an outcome (kind="blocked_last_admin"), not an error.
"""

from uuid import UUID

from structlog import get_logger

from app.clock import Clock
from app.db.repository import IdentityRepository
from app.models.api import UserRole, UserStatus
from app.models.domain import AdminActor, UserMutationResult
from app.observability.metrics import metrics

logger = get_logger(__name__)


class AdminUsersService:
    def __init__(self, repository: IdentityRepository, clock: Clock) -> None:
        self._repo = repository
        self._clock = clock

    async def set_user_role(
        self, actor: AdminActor, target_user_id: UUID, role: UserRole
    ) -> UserMutationResult:
        result = await self._repo.set_user_role(actor, target_user_id, role, self._clock.now())
        self._log_outcome("set_user_role", actor, target_user_id, result, role=role.value)
        return result

    async def set_user_status(
        self,
        actor: AdminActor,
        target_user_id: UUID,
        status: UserStatus,
        reason: str | None = None,
    ) -> UserMutationResult:
        """
        Suspend or reactivate a user. Suspension revokes all of their sessions.

        DELETED is only reachable through account deletion.
        """
        if status == UserStatus.DELETED:
            raise ValueError("Use account deletion to delete a user")

        result = await self._repo.set_user_status(
            actor, target_user_id, status, reason, self._clock.now()
        )
        if result.kind == "ok" and status == UserStatus.SUSPENDED:
            metrics.record_session_revoked("user_suspended")
        self._log_outcome("set_user_status", actor, target_user_id, result, status=status.value)
        return result

    def _log_outcome(
        self,
        operation: str,
        actor: AdminActor,
        target_user_id: UUID,
        result: UserMutationResult,
        **changes: str,
    ) -> None:
        if result.kind == "blocked_last_admin":
            metrics.record_admin_invariant_block(operation)
            logger.warning(
                "last_admin_change_blocked",
                operation=operation,
                actor_user_id=str(actor.user_id),
                target_user_id=str(target_user_id),
                trace_id=actor.trace_id,
                **changes,
            )
            return

        logger.info(
            "admin_user_change",
            operation=operation,
            outcome=result.kind,
            actor_user_id=str(actor.user_id),
            target_user_id=str(target_user_id),
            trace_id=actor.trace_id,
            **changes,
        )
