"""
Request Context Middleware

Stamps every request with an id, the client address and timing, and
adds security headers to every response. Route handlers turn this into
the RequestDetails carried by audit records.
"""

import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.access.models import RequestDetails

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-ID"


class RequestContext:
    """Per-request metadata attached to request.state.context."""

    def __init__(
        self,
        request_id: str,
        ip_address: str,
        user_agent: str,
        endpoint: str,
        method: str,
        session_id: Optional[str] = None,
    ):
        self.request_id = request_id
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.endpoint = endpoint
        self.method = method
        self.session_id = session_id
        self.start_time = time.time()

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000

    def to_request_details(self) -> RequestDetails:
        return RequestDetails(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            endpoint=self.endpoint,
            method=self.method,
            request_id=self.request_id,
            session_id=self.session_id,
        )


def get_client_ip(request: Request) -> str:
    """Extract client IP, honoring proxy headers."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def security_headers(request_id: str) -> dict[str, str]:
    return {
        "X-Request-ID": request_id,
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Cache-Control": "no-store, no-cache, must-revalidate, private",
        "Pragma": "no-cache",
    }


def _build_context(request: Request) -> RequestContext:
    endpoint = request.url.path
    if request.url.query:
        endpoint = f"{endpoint}?{request.url.query}"
    return RequestContext(
        request_id=request.headers.get("X-Request-ID") or str(uuid4()),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent") or "unknown",
        endpoint=endpoint,
        method=request.method,
        session_id=request.headers.get(SESSION_HEADER),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Attaches a RequestContext and decorates the response.

    Usage:
        app.add_middleware(RequestContextMiddleware)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = _build_context(request)
        request.state.context = context

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request processing error: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "message": "Internal server error",
                    "code": "INTERNAL_ERROR",
                    "requestId": context.request_id,
                },
                headers=security_headers(context.request_id),
            )

        for header, value in security_headers(context.request_id).items():
            response.headers[header] = value
        response.headers["X-Response-Time-Ms"] = str(round(context.elapsed_ms, 2))
        return response


def get_request_details(request: Request) -> RequestDetails:
    """
    FastAPI dependency: audit request details for the current request.

    Falls back to building them directly when the middleware is absent.
    """
    context = getattr(request.state, "context", None)
    if context is None:
        context = _build_context(request)
        request.state.context = context
    return context.to_request_details()
