"""
Health Check Endpoints

Provides health, readiness, and liveness probes for monitoring,
load balancers, and Kubernetes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.api.dependencies import get_services
from app.config import settings
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    """Detailed health check with audit writer state."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    audit: dict[str, int]
    config: dict[str, str]


async def _database_check() -> str:
    if settings.storage_backend != "sql":
        return "skipped"
    try:
        return "ok" if await check_db_health() else "failed"
    except Exception as e:
        logger.error(f"Health check: Database error - {e}")
        return "error"


async def _redis_check() -> str:
    try:
        return "ok" if await check_redis_health() else "failed"
    except Exception as e:
        logger.error(f"Health check: Redis error - {e}")
        return "error"


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """
    Basic health check.

    Always returns 200 if the application is running.
    Use /health/ready for dependency checks.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Checks database and Redis connectivity. Returns 503 if the database is unavailable.",
    responses={
        200: {"description": "Required dependencies are ready"},
        503: {"description": "The database is unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe for load balancers and Kubernetes.

    Checks:
    - Database connectivity (sql backend only)
    - Redis connectivity (reported; the break-glass limiter fails open)

    Returns 503 if the database check fails.
    """
    checks = {
        "database": await _database_check(),
        "redis": await _redis_check(),
    }
    all_ok = checks["database"] in ("ok", "skipped")

    if checks["redis"] != "ok":
        logger.warning("Readiness check: Redis unavailable, rate limiting fails open")

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        logger.warning("Readiness check: Database unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Returns 200 if the process is alive. Used for container restart decisions.",
)
async def live() -> LiveResponse:
    """
    Liveness probe for Kubernetes.

    Always returns 200 if the process is running.
    """
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Returns detailed system health. Only available in development.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    """Detailed health check, development only."""
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = {
        "database": await _database_check(),
        "redis": await _redis_check(),
    }

    writer = get_services().writer
    checks["audit_writer"] = "ok" if writer.running else "stopped"

    # Safe config info (no secrets)
    config = {
        "app_name": settings.app_name,
        "environment": settings.app_env,
        "storage_backend": settings.storage_backend,
        "emergency_rate_limit": str(settings.emergency_rate_limit),
    }

    all_ok = all(v in ("ok", "skipped") for v in checks.values())

    return DetailedHealthResponse(
        status="healthy" if all_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        audit={
            "pending": writer.pending,
            "written": writer.written,
            "dropped": writer.dropped,
        },
        config=config,
    )
