"""Tests for the identity provider client."""

import httpx
import pytest

from app.infra.identity import IdentityClient, IdentityUnavailable


def _client(handler) -> IdentityClient:
    client = IdentityClient(base_url="http://identity.test", timeout=1.0)
    client._client = httpx.AsyncClient(
        base_url="http://identity.test",
        transport=httpx.MockTransport(handler),
    )
    return client


class TestIdentityClient:
    """Test token resolution."""

    @pytest.mark.asyncio
    async def test_valid_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"id": "user-1", "email": "ana@example.com"})

        client = _client(handler)
        user = await client.get_user("token-abc")
        await client.close()

        assert user.id == "user-1"
        assert user.email == "ana@example.com"
        assert seen["path"] == "/auth/v1/user"
        assert seen["auth"] == "Bearer token-abc"

    @pytest.mark.asyncio
    async def test_invalid_token(self):
        client = _client(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

        assert await client.get_user("bad") is None

    @pytest.mark.asyncio
    async def test_response_without_id(self):
        client = _client(lambda request: httpx.Response(200, json={"email": "x@example.com"}))

        assert await client.get_user("token") is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = _client(lambda request: httpx.Response(503))

        with pytest.raises(IdentityUnavailable):
            await client.get_user("token")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)

        with pytest.raises(IdentityUnavailable):
            await client.get_user("token")
