"""Login rate limiting using Redis."""

from typing import Protocol

import redis.asyncio as redis
from structlog import get_logger

from app.exceptions import LoginRateLimitedError
from app.models.domain import normalize_email

logger = get_logger(__name__)


class LoginRateLimiter(Protocol):
    async def assert_allowed(self, email: str, ip: str | None) -> None:
        """Raises LoginRateLimitedError once the failure budget is spent."""
        ...

    async def record_failure(self, email: str, ip: str | None) -> None: ...

    async def record_success(self, email: str, ip: str | None) -> None: ...


def login_rate_key(email: str, ip: str | None) -> str:
    return f"login_failures:{normalize_email(email)}:{ip or '-'}"


class RedisLoginRateLimiter:
    """
    Fixed-window failed-login counter per (email, ip).

    Limit: max_failures per window_seconds; a successful login clears it.
    """

    def __init__(
        self,
        redis_client: redis.Redis,  # type: ignore[type-arg]
        max_failures: int,
        window_seconds: int,
    ) -> None:
        self._redis = redis_client
        self.max_failures = max_failures
        self.window_seconds = window_seconds

    async def assert_allowed(self, email: str, ip: str | None) -> None:
        key = login_rate_key(email, ip)
        count_bytes = await self._redis.get(key)
        count = int(count_bytes) if count_bytes else 0
        if count < self.max_failures:
            return

        ttl = await self._redis.ttl(key)
        retry_after = ttl if ttl and ttl > 0 else self.window_seconds
        logger.warning(
            "login_rate_limit_exceeded",
            ip=ip,
            failures=count,
            limit=self.max_failures,
            retry_after_seconds=retry_after,
        )
        raise LoginRateLimitedError(retry_after)

    async def record_failure(self, email: str, ip: str | None) -> None:
        key = login_rate_key(email, ip)
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.window_seconds, nx=True)
        count, _ = await pipe.execute()
        logger.debug("login_failure_recorded", ip=ip, failures=count, limit=self.max_failures)

    async def record_success(self, email: str, ip: str | None) -> None:
        await self._redis.delete(login_rate_key(email, ip))
