"""Tests for the break-glass rate limiter."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError

from app.access.models import Principal, Role
from app.api.middleware.rate_limit import emergency_identifier
from app.infra.redis import RateLimiterStore


@pytest.fixture
def mock_redis():
    client = MagicMock()
    counts = {}

    async def incr(key):
        counts[key] = counts.get(key, 0) + 1
        return counts[key]

    client.incr = AsyncMock(side_effect=incr)
    client.expire = AsyncMock(return_value=True)
    client.ttl = AsyncMock(return_value=86000)
    client.delete = AsyncMock(side_effect=lambda key: counts.pop(key, None))
    return client


class TestRateLimiterStore:

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, mock_redis):
        limiter = RateLimiterStore(mock_redis, max_requests=2, window_seconds=86400)

        first = await limiter.is_allowed("emergency:doctor-1")
        second = await limiter.is_allowed("emergency:doctor-1")
        third = await limiter.is_allowed("emergency:doctor-1")

        assert first == (True, 1, 86000)
        assert second == (True, 0, 86000)
        assert third == (False, 0, 86000)
        mock_redis.expire.assert_awaited_once_with(
            "consent-ledger:v1:ratelimit:emergency:doctor-1", 86400
        )

    @pytest.mark.asyncio
    async def test_callers_counted_separately(self, mock_redis):
        limiter = RateLimiterStore(mock_redis, max_requests=1, window_seconds=60)

        assert (await limiter.is_allowed("emergency:doctor-1"))[0] is True
        assert (await limiter.is_allowed("emergency:nurse-1"))[0] is True

    @pytest.mark.asyncio
    async def test_missing_ttl_uses_window(self, mock_redis):
        mock_redis.ttl = AsyncMock(return_value=-1)
        limiter = RateLimiterStore(mock_redis, max_requests=5, window_seconds=60)

        assert await limiter.is_allowed("emergency:doctor-1") == (True, 4, 60)

    @pytest.mark.asyncio
    async def test_fails_open_without_redis(self):
        limiter = RateLimiterStore(None, max_requests=5, window_seconds=60)

        assert await limiter.is_allowed("emergency:doctor-1") == (True, 5, 60)
        assert await limiter.reset("emergency:doctor-1") is False

    @pytest.mark.asyncio
    async def test_fails_open_on_redis_error(self, mock_redis):
        mock_redis.incr = AsyncMock(side_effect=ConnectionError("refused"))
        limiter = RateLimiterStore(mock_redis, max_requests=5, window_seconds=60)

        assert await limiter.is_allowed("emergency:doctor-1") == (True, 5, 60)

    @pytest.mark.asyncio
    async def test_reset(self, mock_redis):
        limiter = RateLimiterStore(mock_redis, max_requests=1, window_seconds=60)
        await limiter.is_allowed("emergency:doctor-1")

        assert await limiter.reset("emergency:doctor-1") is True
        assert (await limiter.is_allowed("emergency:doctor-1"))[0] is True

    def test_identifier_per_caller(self):
        principal = Principal(id="doctor-1", role=Role.DOCTOR)
        assert emergency_identifier(principal) == "emergency:doctor-1"
