"""
Consent Ledger API

FastAPI application entry point that ties all components together.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.access.exceptions import AccessControlError
from app.api.dependencies import get_services
from app.api.middleware.rate_limit import RateLimitMiddleware
from app.api.middleware.request_context import RequestContextMiddleware
from app.api.routes import audit, consents, health, patients
from app.config import settings
from app.infra.database import close_db, init_db
from app.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Create tables in development only; production uses migrations
    if settings.storage_backend == "sql" and settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    services = get_services()
    services.writer.start()

    try:
        await services.consents.expire_stale()
    except AccessControlError as e:
        logger.warning(f"Stale consent sweep skipped: {e.message}")

    try:
        redis = await RedisClient.get_client()
        if redis:
            logger.info("Redis connection established")
        else:
            logger.warning("Redis unavailable - emergency rate limiting fails open")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}")

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    # Flush queued audit records before the store goes away
    await services.writer.stop()

    await RedisClient.close()
    logger.info("Redis connection closed")

    if settings.storage_backend == "sql":
        await close_db()
        logger.info("Database connections closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Consent Ledger API",
    description="""
    Consent-governed access control for patient health data.

    ## Features
    - Patient-managed consent grants (scope, purpose, expiry, usage limits)
    - Consent enforcement on every patient data read
    - Break-glass emergency access with mandatory justification
    - Append-only, hash-chained audit ledger (HIPAA / GDPR)

    ## Authentication
    Identity is verified upstream and forwarded in the `X-User-ID` and
    `X-User-Role` headers. Patient records are linked server-side.

    ## Rate Limiting
    Emergency access is rate-limited per caller.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

# Middleware execution order (reverse of add order):
# 1. RequestContextMiddleware - request id, client ip, security headers
# 2. RateLimitMiddleware - copies limiter state into response headers
# 3. CORSMiddleware - handles CORS headers

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(AccessControlError)
async def access_control_exception_handler(
    request: Request,
    exc: AccessControlError,
) -> JSONResponse:
    """Render access control errors as {success: false, message, code, ...}."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message} | {request.method} {request.url.path}")
    else:
        logger.info(f"{exc.code}: {exc.message} | {request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Validation failed",
            "code": "VALIDATION_ERROR",
            "errors": [
                f"{'.'.join(str(p) for p in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ],
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Keep HTTPException bodies in the same envelope as everything else."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"success": False, "message": str(exc.detail), "code": "HTTP_ERROR"}
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    message = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": message,
            "code": "INTERNAL_ERROR",
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next: Callable) -> Response:
    """Logs request duration in debug mode."""
    start_time = time.time()
    try:
        return await call_next(request)
    finally:
        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


# Health check routes (no auth required)
app.include_router(health.router)
app.include_router(consents.router)
app.include_router(patients.router)
app.include_router(audit.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
