"""
Rate Limiting

Per-tenant fixed-window rate limiting with a Redis backend and
X-RateLimit-* headers. Fails open when Redis is unavailable.
"""

import logging
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.api.middleware.auth import TenantContext, require_auth
from app.infra.redis import get_rate_limiter_store, RateLimiterStore

logger = logging.getLogger(__name__)

# Header names
HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_USED = "X-RateLimit-Used"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"


def add_rate_limit_headers(
    response: Response,
    limit: int,
    remaining: int,
    used: int,
    reset_seconds: int,
) -> None:
    """Add rate limit headers to response."""
    response.headers[HEADER_LIMIT] = str(limit)
    response.headers[HEADER_REMAINING] = str(remaining)
    response.headers[HEADER_USED] = str(used)
    response.headers[HEADER_RESET] = str(reset_seconds)


async def check_rate_limit(
    tenant: TenantContext,
    store: RateLimiterStore,
) -> Tuple[bool, int, int, int, int]:
    """
    Count the request against the tenant's window.

    Returns:
        Tuple of (allowed, limit, remaining, used, reset_seconds)
    """
    allowed, remaining, used, reset_seconds = await store.hit(f"tenant:{tenant.user_id}")
    return (allowed, store.max_requests, remaining, used, reset_seconds)


async def require_auth_with_rate_limit(
    request: Request,
    tenant: TenantContext = Depends(require_auth),
    store: RateLimiterStore = Depends(get_rate_limiter_store),
) -> TenantContext:
    """
    Combined dependency: authenticate and check rate limit.

    Usage:
        @router.get("/endpoint")
        async def endpoint(tenant: TenantContext = Depends(require_auth_with_rate_limit)):
            ...
    """
    allowed, limit, remaining, used, reset_seconds = await check_rate_limit(tenant, store)

    # Store in request state for the middleware to add headers
    request.state.rate_limit_limit = limit
    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_used = used
    request.state.rate_limit_reset = reset_seconds

    if not allowed:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(
            f"Rate limit exceeded | User: {tenant.user_id} | "
            f"Limit: {limit} | Used: {used} | IP: {client_ip} | Path: {request.url.path}"
        )

        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Rate limit exceeded",
                "limit": limit,
                "used": used,
                "retry_after": reset_seconds,
            },
            headers={
                HEADER_LIMIT: str(limit),
                HEADER_REMAINING: "0",
                HEADER_USED: str(used),
                HEADER_RESET: str(reset_seconds),
                HEADER_RETRY_AFTER: str(reset_seconds),
            },
        )

    return tenant


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds rate limit headers to all responses.

    The actual check is done by the require_auth_with_rate_limit dependency.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        limit: Optional[int] = getattr(request.state, "rate_limit_limit", None)
        if limit is not None and limit > 0:
            add_rate_limit_headers(
                response,
                limit,
                request.state.rate_limit_remaining,
                request.state.rate_limit_used,
                request.state.rate_limit_reset,
            )

        return response
