"""
Bearer Token Authentication

Resolves the caller's access token through the identity provider, caches
the result in Redis by token hash, and exposes the tenant through a
ContextVar for the rest of the request.
"""

import hashlib
import json
import logging
from contextvars import ContextVar
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.messaging.store import ConnectionStore
from app.infra.identity import IdentityClient, IdentityUnavailable, get_identity_client
from app.infra.redis import get_redis, APP_PREFIX
from app.models.database import EmployeeRole

logger = logging.getLogger(__name__)

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# ContextVar for tenant context (accessible anywhere without passing)
_tenant_context: ContextVar[Optional["TenantContext"]] = ContextVar(
    "tenant_context",
    default=None
)

# Redis cache settings
AUTH_CACHE_PREFIX = f"{APP_PREFIX}auth:"


class TenantContext:
    """
    Authenticated tenant context.

    Available anywhere via get_current_tenant() after authentication.
    """

    def __init__(
        self,
        user_id: str,
        company_id: Optional[str] = None,
        role: str = EmployeeRole.SELLER.value,
        email: Optional[str] = None,
    ):
        self.user_id = user_id
        self.company_id = company_id
        self.role = role
        self.email = email

    @property
    def is_admin(self) -> bool:
        return self.role == EmployeeRole.ADMIN.value

    def to_cache_dict(self) -> dict:
        """Convert to dict for Redis caching."""
        return {
            "user_id": self.user_id,
            "company_id": self.company_id,
            "role": self.role,
            "email": self.email,
        }

    @classmethod
    def from_cache_dict(cls, data: dict) -> "TenantContext":
        """Create context from cached dict."""
        return cls(
            user_id=data["user_id"],
            company_id=data.get("company_id"),
            role=data.get("role", EmployeeRole.SELLER.value),
            email=data.get("email"),
        )

    def __repr__(self) -> str:
        return f"<TenantContext(user_id={self.user_id}, company_id={self.company_id}, role='{self.role}')>"


def hash_token(token: str) -> str:
    """
    Hash an access token for cache keys.

    Uses SHA-256.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def mask_token(token: str) -> str:
    """Mask a token for logging."""
    if len(token) < 16:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


async def get_cached_tenant(token_hash: str) -> Optional[TenantContext]:
    """
    Get tenant context from Redis cache.

    Returns None if not cached or Redis unavailable.
    """
    try:
        redis = await get_redis()
        if redis is None:
            logger.debug("Redis unavailable for auth cache lookup")
            return None

        data = await redis.get(f"{AUTH_CACHE_PREFIX}{token_hash}")
        if data is None:
            return None

        return TenantContext.from_cache_dict(json.loads(data))

    except (RedisError, ValueError, KeyError) as e:
        logger.warning(f"Failed to get auth cache: {e}")
        return None


async def set_cached_tenant(token_hash: str, context: TenantContext) -> None:
    """
    Cache tenant context in Redis.

    Silently fails if Redis unavailable.
    """
    try:
        redis = await get_redis()
        if redis is None:
            return

        await redis.setex(
            f"{AUTH_CACHE_PREFIX}{token_hash}",
            settings.auth_cache_ttl,
            json.dumps(context.to_cache_dict()),
        )
        logger.debug(f"Cached auth for user {context.user_id}")

    except RedisError as e:
        logger.warning(f"Failed to set auth cache: {e}")


def get_current_tenant() -> TenantContext:
    """
    Get current tenant context.

    Raises RuntimeError if called without authentication.
    """
    context = _tenant_context.get()
    if context is None:
        raise RuntimeError("No tenant context - called outside authenticated request")
    return context


def get_current_tenant_optional() -> Optional[TenantContext]:
    """Get current tenant context or None."""
    return _tenant_context.get()


def set_tenant_context(context: Optional[TenantContext]) -> None:
    _tenant_context.set(context)


def clear_tenant_context() -> None:
    """
    Clear tenant context.

    Called at end of request to prevent context leaking.
    """
    _tenant_context.set(None)


def get_connection_store() -> ConnectionStore:
    """Store used for employee lookups (overridable in tests)."""
    return ConnectionStore()


async def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    identity: IdentityClient = Depends(get_identity_client),
    store: ConnectionStore = Depends(get_connection_store),
) -> TenantContext:
    """
    FastAPI dependency that requires a bearer token.

    Flow:
    1. Try Redis cache by token hash
    2. If not cached, resolve the token with the identity provider
    3. Load company and role from the employees table
    4. Cache result in Redis
    5. Set TenantContext

    Raises:
        HTTPException 401: Missing, invalid or expired token
        HTTPException 503: Identity provider or database unavailable
    """
    client_ip = request.client.host if request.client else "unknown"

    if credentials is None or not credentials.credentials:
        logger.warning(f"Auth failed: No bearer token | IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    token_hash = hash_token(token)

    # Try cache first
    context = await get_cached_tenant(token_hash)
    if context is not None:
        logger.debug(f"Auth success (cached) | User: {context.user_id} | IP: {client_ip}")
        set_tenant_context(context)
        request.state.tenant = context
        return context

    # Cache miss - ask the identity provider
    try:
        user = await identity.get_user(token)
    except IdentityUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )

    if user is None:
        logger.warning(f"Auth failed: Invalid token | Token: {mask_token(token)} | IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        employee = await store.get_employee(user.id)
    except SQLAlchemyError as e:
        logger.error(f"Database error during auth: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )

    context = TenantContext(
        user_id=user.id,
        company_id=employee.company_id if employee else None,
        role=employee.role.value if employee else EmployeeRole.SELLER.value,
        email=user.email,
    )

    await set_cached_tenant(token_hash, context)

    set_tenant_context(context)
    request.state.tenant = context

    logger.debug(f"Auth success | User: {context.user_id} | Role: {context.role} | IP: {client_ip}")
    return context


async def require_admin(
    request: Request,
    tenant: TenantContext = Depends(require_auth),
) -> TenantContext:
    """
    FastAPI dependency that requires the admin role.

    Raises:
        HTTPException 403: Authenticated but not an admin
    """
    if not tenant.is_admin:
        logger.warning(f"Admin access denied | User: {tenant.user_id} | Path: {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return tenant
