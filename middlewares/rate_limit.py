"""
Rate limiting middleware with Redis support for multi-instance deployments.
"""
import logging
import time
from collections import defaultdict
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = {"status": "fail", "error": "Too many requests. Please wait a moment.", "code": "RATE_LIMITED"}


def _client_key(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RedisRateLimiter:
    """Request counting through Redis."""

    def __init__(
        self,
        redis_client,
        max_calls: int = 300,
        period: float = 60.0,
        key_prefix: str = "rate_limit:"
    ):
        """
        Args:
            redis_client: Redis client (async)
            max_calls: Maximum number of requests per period
            period: Period in seconds
            key_prefix: Prefix of the Redis keys
        """
        self.redis = redis_client
        self.max_calls = max_calls
        self.period = int(period)
        self.key_prefix = key_prefix

    def _key(self, client_key: str) -> str:
        return f"{self.key_prefix}{client_key}"

    async def allow(self, client_key: str) -> bool:
        try:
            key = self._key(client_key)
            # INCR + EXPIRE on first hit
            current = await self.redis.incr(key)
            if current == 1:
                await self.redis.expire(key, self.period)
            return current <= self.max_calls
        except Exception as e:
            logger.warning("Rate limit error for %s: %s", client_key, e)
            # let the request through when Redis fails
            return True


class MemoryRateLimiter:
    """In-memory rate limiting (fallback)."""

    def __init__(self, max_calls: int = 300, period: float = 60.0):
        self.max_calls = max_calls
        self.period = period
        self.calls = defaultdict(list)

    async def allow(self, client_key: str) -> bool:
        now = time.time()
        client_calls = self.calls[client_key]
        client_calls[:] = [t for t in client_calls if now - t < self.period]
        if len(client_calls) >= self.max_calls:
            return False
        client_calls.append(now)
        return True


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Answers 429 once a client exceeds its budget. The limiter lives on app.state."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        limiter = getattr(request.app.state, "rate_limiter", None)
        client_key = _client_key(request)
        if limiter is None or client_key is None:
            return await call_next(request)

        if not await limiter.allow(client_key):
            logger.warning("Rate limit exceeded for %s on %s", client_key, request.url.path)
            return JSONResponse(TOO_MANY_REQUESTS, status_code=429)
        return await call_next(request)


async def create_rate_limiter(
    redis_client=None,
    max_calls: int = 300,
    period: float = 60.0
) -> RedisRateLimiter | MemoryRateLimiter:
    """
    Create a rate limiter.

    Args:
        redis_client: Redis client (optional)
        max_calls: Maximum number of requests
        period: Period in seconds

    Returns:
        Limiter instance (Redis or Memory)
    """
    if redis_client:
        try:
            await redis_client.ping()
            return RedisRateLimiter(redis_client, max_calls, period)
        except Exception as e:
            logger.warning("Redis not available for rate limiting, using memory: %s", e)

    return MemoryRateLimiter(max_calls, period)
