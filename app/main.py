"""
WhatsApp Session Manager API

FastAPI application entry point that ties all components together.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from app.config import settings
from app.api.middleware.auth import clear_tenant_context
from app.api.middleware.rate_limit import RateLimitMiddleware
from app.api.routes import admin, health, whatsapp
from app.core.messaging import MessagingError, get_messaging_service
from app.infra.database import init_db, close_db
from app.infra.identity import close_identity_client
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
    logging.getLogger("httpx").setLevel(logging.WARNING)


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

    # Set health check start time
    health.set_start_time()

    # Initialize database (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    # Test Redis connection
    redis = await RedisClient.get_client()
    if redis:
        logger.info("Redis connection established")
    else:
        logger.warning("Redis unavailable - running in degraded mode")

    # Start the idle-session reaper
    service = get_messaging_service()
    service.start()

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    # Release every live browser session
    await service.shutdown()

    await close_identity_client()

    # Close Redis connection
    await RedisClient.close()

    # Close database connections
    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="WhatsApp Session Manager API",
    description="""
    Multi-tenant WhatsApp Web session manager.

    ## Features
    - One live browser-driven client per user
    - QR pairing with status polling and heartbeats
    - Chat history sync into the relational store
    - Send, edit, delete and react through the live client

    ## Authentication
    All session endpoints require a bearer access token issued by the
    identity provider.

    ## Rate Limiting
    Requests are rate-limited per user.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

# CORS middleware (runs last on request, first on response)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Adds X-RateLimit-* headers set by the rate limit dependency
app.add_middleware(RateLimitMiddleware)


@app.exception_handler(MessagingError)
async def messaging_exception_handler(
    request: Request,
    exc: MessagingError,
) -> JSONResponse:
    """Map session conditions to their HTTP status."""
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Request bodies and query parameters use the same error shape as session errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_lifecycle_middleware(request: Request, call_next):
    """
    Middleware for request lifecycle management.

    - Clears tenant context after each request
    - Logs request duration in debug mode
    """
    start_time = time.time()

    try:
        response = await call_next(request)
        return response
    finally:
        # Clear tenant context to prevent leaking between requests
        clear_tenant_context()

        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


# Health check routes (no auth required)
app.include_router(health.router)

# Session routes (bearer auth + rate limit)
app.include_router(whatsapp.router)
app.include_router(admin.router)


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
