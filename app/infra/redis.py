"""
Redis Connection Management

Redis connection with retry and graceful degradation, plus the counter
store behind the break-glass rate limit. Fails open: a Redis outage
never blocks clinical staff.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "consent-ledger:v1:"


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Features:
    - Connection pooling
    - Automatic retries
    - Timeouts
    - Graceful failure handling
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False


async def get_redis() -> Optional[Redis]:
    """
    Get the shared Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class RateLimiterStore:
    """
    Fixed-window request counter in Redis.

    Key: consent-ledger:v1:ratelimit:{identifier}

    IMPORTANT: Fails OPEN - if Redis is unavailable, requests are ALLOWED.
    """

    RATELIMIT_PREFIX = f"{APP_PREFIX}ratelimit:"

    def __init__(
        self,
        redis_client: Optional[Redis],
        max_requests: int,
        window_seconds: int,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def _key(self, identifier: str) -> str:
        """Generate rate limit key with namespace."""
        return f"{self.RATELIMIT_PREFIX}{identifier}"

    async def is_allowed(self, identifier: str) -> tuple[bool, int, int]:
        """
        Count one request and check it against the limit.

        FAILS OPEN: If Redis unavailable, returns (True, max_requests, window_seconds)

        Args:
            identifier: Unique identifier (e.g., "emergency:{user_id}")

        Returns:
            Tuple of (allowed: bool, remaining: int, reset_seconds: int)
        """
        if self.redis is None:
            logger.warning(f"Redis unavailable - rate limiting bypassed for {identifier}")
            return (True, self.max_requests, self.window_seconds)

        try:
            key = self._key(identifier)

            current = await self.redis.incr(key)

            # Set expiry on first request in window
            if current == 1:
                await self.redis.expire(key, self.window_seconds)

            ttl = await self.redis.ttl(key)
            if ttl < 0:
                ttl = self.window_seconds

            remaining = max(0, self.max_requests - current)
            allowed = current <= self.max_requests

            if not allowed:
                logger.info(f"Rate limit exceeded for {identifier}")

            return (allowed, remaining, ttl)

        except RedisError as e:
            logger.error(f"Rate limit check failed for {identifier}: {e} - allowing request")
            return (True, self.max_requests, self.window_seconds)

    async def reset(self, identifier: str) -> bool:
        """
        Reset rate limit for an identifier.

        Returns:
            True if reset successful
        """
        if self.redis is None:
            return False

        try:
            await self.redis.delete(self._key(identifier))
            logger.debug(f"Rate limit reset for {identifier}")
            return True
        except RedisError as e:
            logger.error(f"Failed to reset rate limit for {identifier}: {e}")
            return False


async def get_emergency_rate_limiter() -> RateLimiterStore:
    """
    RateLimiterStore for break-glass requests.

    Returned even if Redis is unavailable (fails open).
    """
    client = await get_redis()
    return RateLimiterStore(
        client,
        max_requests=settings.emergency_rate_limit,
        window_seconds=settings.emergency_rate_window,
    )


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
