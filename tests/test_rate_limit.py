"""
Tests for RedisLoginRateLimiter.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import LoginRateLimitedError
from app.services.rate_limit import RedisLoginRateLimiter, login_rate_key


@pytest.fixture
def mock_redis():
    """Mock Redis client with a pipeline."""
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.ttl = AsyncMock(return_value=-2)
    client.delete = AsyncMock(return_value=1)

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline = MagicMock(return_value=pipe)
    client.pipe = pipe
    return client


@pytest.fixture
def limiter(mock_redis) -> RedisLoginRateLimiter:
    return RedisLoginRateLimiter(mock_redis, max_failures=3, window_seconds=600)


class TestLoginRateKey:
    def test_normalizes_email(self):
        assert login_rate_key(" A@Example.com", "1.2.3.4") == "login_failures:a@example.com:1.2.3.4"

    def test_missing_ip(self):
        assert login_rate_key("a@example.com", None) == "login_failures:a@example.com:-"


class TestAssertAllowed:
    """Tests for assert_allowed."""

    @pytest.mark.asyncio
    async def test_no_failures(self, limiter, mock_redis):
        await limiter.assert_allowed("a@example.com", "1.2.3.4")
        mock_redis.get.assert_awaited_once_with("login_failures:a@example.com:1.2.3.4")

    @pytest.mark.asyncio
    async def test_below_limit(self, limiter, mock_redis):
        mock_redis.get.return_value = b"2"
        await limiter.assert_allowed("a@example.com", "1.2.3.4")
        mock_redis.ttl.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_at_limit_uses_remaining_ttl(self, limiter, mock_redis):
        mock_redis.get.return_value = b"3"
        mock_redis.ttl.return_value = 120

        with pytest.raises(LoginRateLimitedError) as exc_info:
            await limiter.assert_allowed("a@example.com", "1.2.3.4")

        assert exc_info.value.retry_after_seconds == 120

    @pytest.mark.asyncio
    async def test_missing_ttl_falls_back_to_window(self, limiter, mock_redis):
        mock_redis.get.return_value = b"5"
        mock_redis.ttl.return_value = -1

        with pytest.raises(LoginRateLimitedError) as exc_info:
            await limiter.assert_allowed("a@example.com", None)

        assert exc_info.value.retry_after_seconds == 600


class TestRecording:
    @pytest.mark.asyncio
    async def test_failure_increments_and_sets_window_once(self, limiter, mock_redis):
        await limiter.record_failure("a@example.com", "1.2.3.4")

        key = "login_failures:a@example.com:1.2.3.4"
        mock_redis.pipe.incr.assert_called_once_with(key)
        mock_redis.pipe.expire.assert_called_once_with(key, 600, nx=True)
        mock_redis.pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_success_clears_counter(self, limiter, mock_redis):
        await limiter.record_success("a@example.com", "1.2.3.4")
        mock_redis.delete.assert_awaited_once_with("login_failures:a@example.com:1.2.3.4")
