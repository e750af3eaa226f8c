"""
Health Check Endpoints

Liveness, readiness and a development-only detailed view. Readiness covers
the database, Redis and the session reaper, and reports how many sessions
the registry currently holds.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.messaging import get_messaging_service
from app.core.messaging.state import SyncStatus
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Record process start. Called once from the lifespan."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class SessionCounts(BaseModel):
    """Live sessions held by this process."""
    total: int = 0
    by_status: dict[str, int] = {}


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    status: str
    timestamp: datetime
    checks: dict[str, str]
    sessions: SessionCounts


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    sessions: SessionCounts
    syncing: int
    config: dict[str, str]


async def _probe(name: str, check: Callable[[], Awaitable[bool]], verbose: bool = False) -> str:
    try:
        if await check():
            return "ok"
        logger.warning(f"Health check failed: {name}")
        return "failed"
    except Exception as e:
        logger.error(f"Health check error: {name} - {e}")
        return f"error: {str(e)[:50]}" if verbose else "error"


async def _run_checks(verbose: bool = False) -> dict[str, str]:
    service = get_messaging_service()
    return {
        "database": await _probe("database", check_db_health, verbose),
        "redis": await _probe("redis", check_redis_health, verbose),
        # A stopped reaper leaks browsers of abandoned sessions
        "reaper": "ok" if service.reaper.running else "stopped",
    }


def _session_counts() -> SessionCounts:
    by_status = get_messaging_service().registry.count_by_status()
    return SessionCounts(total=sum(by_status.values()), by_status=by_status)


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Checks database, Redis and the session reaper. Returns 503 if any is unavailable.",
    responses={
        200: {"description": "Ready to manage sessions"},
        503: {"description": "A dependency is unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe for load balancers and Kubernetes.

    Returns 503 if any check is not "ok". Session counts are informational
    and never affect the status.
    """
    checks = await _run_checks()
    all_ok = all(v == "ok" for v in checks.values())

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
        sessions=_session_counts(),
    )

    if not all_ok:
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
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Dependency errors, session and sync counts, and safe settings. Development only.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = await _run_checks(verbose=True)
    records = get_messaging_service().registry.all_records()
    syncing = sum(1 for r in records if r.sync_status in (SyncStatus.PENDING, SyncStatus.SYNCING))

    # No secrets here
    config = {
        "browser_headless": str(settings.browser_headless),
        "pairing_timeout_seconds": str(settings.pairing_timeout_seconds),
        "pairing_ttl_seconds": str(settings.pairing_ttl_seconds),
        "connected_ttl_seconds": str(settings.connected_ttl_seconds),
        "reaper_interval_seconds": str(settings.reaper_interval_seconds),
        "action_timeout_seconds": str(settings.action_timeout_seconds),
        "rate_limit_requests": str(settings.rate_limit_requests),
    }

    return DetailedHealthResponse(
        status="healthy" if all(v == "ok" for v in checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        sessions=_session_counts(),
        syncing=syncing,
        config=config,
    )
