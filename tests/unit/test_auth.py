"""Tests for bearer token authentication."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from app.api.middleware.auth import (
    AUTH_CACHE_PREFIX,
    TenantContext,
    get_current_tenant_optional,
    clear_tenant_context,
    hash_token,
    mask_token,
    require_admin,
    require_auth,
)
from app.infra.identity import IdentityUnavailable, IdentityUser
from app.models.database import EmployeeRole


def _request(path: str = "/whatsapp/status") -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [],
        "query_string": b"",
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
        "scheme": "http",
    })


def _bearer(token: str = "token-abcdefghijklmnop") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestRequireAuth:
    """Test the auth dependency."""

    @pytest.fixture
    def identity(self):
        mock = AsyncMock()
        mock.get_user = AsyncMock(return_value=IdentityUser(id="user-1", email="ana@example.com"))
        return mock

    @pytest.fixture
    def store(self):
        mock = AsyncMock()
        mock.get_employee = AsyncMock(
            return_value=SimpleNamespace(company_id="co-1", role=EmployeeRole.MANAGER)
        )
        return mock

    @pytest.fixture(autouse=True)
    def no_redis(self):
        with patch("app.api.middleware.auth.get_redis", AsyncMock(return_value=None)):
            yield
        clear_tenant_context()

    @pytest.mark.asyncio
    async def test_missing_token(self, identity, store):
        with pytest.raises(HTTPException) as exc_info:
            await require_auth(_request(), None, identity, store)

        assert exc_info.value.status_code == 401
        identity.get_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_token(self, identity, store):
        context = await require_auth(_request(), _bearer(), identity, store)

        assert context.user_id == "user-1"
        assert context.company_id == "co-1"
        assert context.role == "manager"
        assert get_current_tenant_optional() is context

    @pytest.mark.asyncio
    async def test_unknown_employee_defaults_to_seller(self, identity, store):
        store.get_employee.return_value = None

        context = await require_auth(_request(), _bearer(), identity, store)

        assert context.company_id is None
        assert context.role == "seller"
        assert not context.is_admin

    @pytest.mark.asyncio
    async def test_invalid_token(self, identity, store):
        identity.get_user.return_value = None

        with pytest.raises(HTTPException) as exc_info:
            await require_auth(_request(), _bearer(), identity, store)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_identity_unavailable(self, identity, store):
        identity.get_user.side_effect = IdentityUnavailable("down")

        with pytest.raises(HTTPException) as exc_info:
            await require_auth(_request(), _bearer(), identity, store)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_database_unavailable(self, identity, store):
        store.get_employee.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with pytest.raises(HTTPException) as exc_info:
            await require_auth(_request(), _bearer(), identity, store)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_cache_hit_skips_identity(self, identity, store):
        token = "token-abcdefghijklmnop"
        cached = TenantContext(user_id="user-9", company_id="co-9", role="admin")
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=json.dumps(cached.to_cache_dict()))

        with patch("app.api.middleware.auth.get_redis", AsyncMock(return_value=redis)):
            context = await require_auth(_request(), _bearer(token), identity, store)

        assert context.user_id == "user-9"
        assert context.is_admin
        redis.get.assert_awaited_once_with(f"{AUTH_CACHE_PREFIX}{hash_token(token)}")
        identity.get_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_result_cached(self, identity, store):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)
        redis.setex = AsyncMock()

        with patch("app.api.middleware.auth.get_redis", AsyncMock(return_value=redis)):
            await require_auth(_request(), _bearer(), identity, store)

        redis.setex.assert_awaited_once()
        cached = json.loads(redis.setex.await_args.args[2])
        assert cached["user_id"] == "user-1"


class TestRequireAdmin:
    """Test the admin dependency."""

    @pytest.mark.asyncio
    async def test_admin_allowed(self):
        tenant = TenantContext(user_id="user-1", role="admin")
        assert await require_admin(_request("/admin/whatsapp/connected"), tenant) is tenant

    @pytest.mark.asyncio
    async def test_seller_rejected(self):
        tenant = TenantContext(user_id="user-1", role="seller")

        with pytest.raises(HTTPException) as exc_info:
            await require_admin(_request("/admin/whatsapp/connected"), tenant)

        assert exc_info.value.status_code == 403


class TestTokenHelpers:
    """Test token hashing and masking."""

    def test_hash_is_stable(self):
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") != hash_token("abd")

    def test_mask(self):
        assert mask_token("short") == "***"
        assert mask_token("token-abcdefghijklmnop") == "token-...mnop"
