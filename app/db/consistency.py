"""
Consistency Guard - serializable transactions with bounded conflict retry.

Every multi-row identity mutation runs through ConsistencyGuard.run():
- the unit of work executes in a fresh session at SERIALIZABLE isolation
- transient conflicts (serialization failure, deadlock) re-run it from scratch
- anything else propagates unchanged on the first occurrence

Also home of the admin invariant lock, which must be taken inside the same
transaction as the mutation it protects.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.db.models import User
from app.exceptions import TransientConflictError
from app.models.api import UserRole, UserStatus
from app.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATE codes
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
UNIQUE_VIOLATION = "23505"

TRANSIENT_SQLSTATES: frozenset[str] = frozenset({SERIALIZATION_FAILURE, DEADLOCK_DETECTED})

TRANSIENT_MESSAGE_PATTERNS = (
    "could not serialize access",
    "deadlock detected",
    "write conflict",
)


def _driver_errors(error: BaseException) -> list[BaseException]:
    """The DBAPI error and the raw driver error beneath it, when present."""
    found: list[BaseException] = []
    orig = getattr(error, "orig", None)
    if orig is not None:
        found.append(orig)
        cause = getattr(orig, "__cause__", None)
        if cause is not None:
            found.append(cause)
    return found


def get_sqlstate(error: BaseException) -> str | None:
    """Extract the SQLSTATE from a SQLAlchemy-wrapped asyncpg error."""
    for candidate in _driver_errors(error):
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if isinstance(code, str) and code:
                return code
    return None


def is_transient_conflict(error: BaseException) -> bool:
    """
    Serialization failures and deadlocks are safe to retry from scratch.

    Checked by SQLSTATE first, then by message for drivers that do not
    expose one.
    """
    if not isinstance(error, DBAPIError):
        return False

    if get_sqlstate(error) in TRANSIENT_SQLSTATES:
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


def is_unique_violation(error: BaseException, constraint: str | None = None) -> bool:
    """True for a unique-constraint violation, optionally on a named constraint."""
    if not isinstance(error, IntegrityError):
        return False

    sqlstate = get_sqlstate(error)
    if sqlstate is not None and sqlstate != UNIQUE_VIOLATION:
        return False
    if sqlstate is None and "unique" not in str(error).lower():
        return False

    if constraint is None:
        return True

    for candidate in _driver_errors(error):
        if getattr(candidate, "constraint_name", None) == constraint:
            return True
    return constraint in str(error)


def _retry_logger(operation: str) -> Callable[[RetryCallState], None]:
    def log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "transaction_conflict_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            sqlstate=get_sqlstate(exc) if exc else None,
        )

    return log_retry


class ConsistencyGuard:
    """
    Run a unit of work inside a serializable transaction, retrying on conflict.

    Usage:
        guard = ConsistencyGuard(session_factory, max_attempts=3)

        async def work(session: AsyncSession) -> str:
            ...
            return "ok"

        result = await guard.run("change_password", work)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        isolation_level: str = "SERIALIZABLE",
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {max_attempts}")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.isolation_level = isolation_level

    async def run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        retry_on: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """
        Execute `work` in its own transaction and commit.

        retry_on widens the retry classification for this call only, e.g. a
        unique race on a value the work itself resolves on the next attempt.

        Raises:
            TransientConflictError: conflicts persisted for every attempt.
        """

        def should_retry(error: BaseException) -> bool:
            if is_transient_conflict(error):
                return True
            return retry_on is not None and retry_on(error)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=0.01, max=0.2, jitter=0.01),
            retry=retry_if_exception(should_retry),
            before_sleep=_retry_logger(operation),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        metrics.record_transaction_retry(operation)
                    return await self._run_once(work)
        except RetryError as e:
            last = e.last_attempt.exception()
            metrics.record_transaction_exhausted(operation)
            logger.error(
                "transaction_conflict_retries_exhausted",
                operation=operation,
                attempts=self.max_attempts,
                sqlstate=get_sqlstate(last) if last else None,
                error=str(last),
            )
            raise TransientConflictError(operation, self.max_attempts) from last

        raise RuntimeError("unreachable: retry loop exited without outcome")

    async def _run_once(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            # Begins the transaction with the requested isolation level
            await session.connection(execution_options={"isolation_level": self.isolation_level})
            try:
                result = await work(session)
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            return result


# ============================================================================
# Admin Invariant Guard
# ============================================================================


async def lock_active_admin_ids(session: AsyncSession) -> list[UUID]:
    """
    Lock every ACTIVE ADMIN row for the rest of the transaction.

    A concurrent demotion blocks on these locks until we commit, so the
    count it then observes already reflects our change.
    """
    stmt = (
        select(User.id)
        .where(User.role == UserRole.ADMIN.value, User.status == UserStatus.ACTIVE.value)
        .with_for_update()
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def blocks_last_admin(locked_admin_ids: list[UUID], target_user_id: UUID) -> bool:
    """True when removing the target would leave no ACTIVE ADMIN."""
    return len(locked_admin_ids) <= 1 and target_user_id in locked_admin_ids
