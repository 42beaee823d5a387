"""
Break-glass Rate Limiting

Per-caller limit on emergency override requests, counted in Redis.
Fails open when Redis is unavailable.
"""

import logging

from fastapi import Depends, HTTPException, Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.access.models import Principal
from app.api.middleware.auth import require_principal
from app.infra.redis import RateLimiterStore, get_emergency_rate_limiter

logger = logging.getLogger(__name__)

# Header names
HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"


def emergency_identifier(principal: Principal) -> str:
    return f"emergency:{principal.id}"


def add_rate_limit_headers(
    response: Response,
    limit: int,
    remaining: int,
    reset_seconds: int,
) -> None:
    """Add rate limit headers to response."""
    response.headers[HEADER_LIMIT] = str(limit)
    response.headers[HEADER_REMAINING] = str(remaining)
    response.headers[HEADER_RESET] = str(reset_seconds)


async def require_emergency_rate_limit(
    request: Request,
    principal: Principal = Depends(require_principal),
    limiter: RateLimiterStore = Depends(get_emergency_rate_limiter),
) -> Principal:
    """
    FastAPI dependency: authenticate and count one break-glass attempt.

    Raises HTTPException 429 once the caller used up the window.
    """
    identifier = emergency_identifier(principal)
    allowed, remaining, reset_seconds = await limiter.is_allowed(identifier)

    # Stored for RateLimitMiddleware to add headers
    request.state.rate_limit_limit = limiter.max_requests
    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_reset = reset_seconds

    if not allowed:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(
            f"Emergency rate limit exceeded | User: {principal.id} | "
            f"Role: {principal.role.value} | Limit: {limiter.max_requests} | IP: {client_ip}"
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "success": False,
                "message": "Emergency access rate limit exceeded",
                "code": "EMERGENCY_RATE_LIMIT_EXCEEDED",
                "retryAfter": reset_seconds,
            },
            headers={
                HEADER_LIMIT: str(limiter.max_requests),
                HEADER_REMAINING: "0",
                HEADER_RESET: str(reset_seconds),
                HEADER_RETRY_AFTER: str(reset_seconds),
            },
        )
    return principal


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Adds rate limit headers to responses.

    The check itself is done by the require_emergency_rate_limit dependency.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        limit = getattr(request.state, "rate_limit_limit", None)
        remaining = getattr(request.state, "rate_limit_remaining", None)
        reset_seconds = getattr(request.state, "rate_limit_reset", None)

        if limit is not None and limit > 0:
            add_rate_limit_headers(response, limit, remaining, reset_seconds)

        return response
