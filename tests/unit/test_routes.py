"""Tests for the HTTP surface: routing, error mapping and rate limit headers."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api.middleware.auth import TenantContext, require_auth
from app.core.messaging import MessagingService, get_messaging_service
from app.core.messaging.client import RemoteContact, RemoteMessage
from app.core.messaging.errors import (
    ActionTimeout,
    AutomationError,
    MessageNotEditable,
    MessageNotFound,
    NotConnected,
    PairingFailed,
)
from app.core.messaging.models import PairingResult, SyncProgress
from app.infra.redis import RateLimiterStore, get_rate_limiter_store
from app.main import app


@pytest.fixture
def tenant():
    return TenantContext(user_id="user-1", company_id="co-1", role="seller")


@pytest.fixture
def service():
    return MagicMock(spec=MessagingService)


@pytest.fixture
def client(tenant, service):
    app.dependency_overrides[require_auth] = lambda: tenant
    app.dependency_overrides[get_rate_limiter_store] = lambda: RateLimiterStore(None)
    app.dependency_overrides[get_messaging_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPairingRoutes:
    """Test init, status, heartbeat and disconnect."""

    def test_init(self, client, service):
        service.initialize.return_value = PairingResult(
            status="qr_ready", pairing_code="2@code", qr_data_url="data:image/png;base64,AAAA"
        )

        response = client.post("/whatsapp/init")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "qr_ready"
        assert body["qr_data_url"] == "data:image/png;base64,AAAA"
        assert body["needs_reconnect"] is False
        service.initialize.assert_awaited_once_with("user-1", "co-1", force=False)

    def test_init_force(self, client, service):
        service.initialize.return_value = PairingResult(status="connecting")

        client.post("/whatsapp/init", json={"force": True})

        service.initialize.assert_awaited_once_with("user-1", "co-1", force=True)

    def test_init_needs_reconnect(self, client, service):
        service.initialize.return_value = PairingResult(
            status=PairingResult.NEEDS_RECONNECT, phone_number="5511000000001"
        )

        body = client.post("/whatsapp/init").json()

        assert body["status"] == "needs_reconnect"
        assert body["needs_reconnect"] is True

    def test_init_pairing_failed(self, client, service):
        service.initialize.side_effect = PairingFailed("Could not create messaging client")

        response = client.post("/whatsapp/init")

        assert response.status_code == 502
        assert response.json()["error"] == "pairing_failed"

    def test_status(self, client, service):
        service.status.return_value = PairingResult(status="connected", phone_number="5511000000001")

        body = client.get("/whatsapp/status").json()

        assert body["status"] == "connected"
        assert body["phone_number"] == "5511000000001"

    def test_heartbeat(self, client, service):
        service.heartbeat.return_value = True
        assert client.post("/whatsapp/heartbeat").json() == {"status": "ok"}

        service.heartbeat.return_value = False
        assert client.post("/whatsapp/heartbeat").json() == {"status": "no_client"}

    def test_disconnect(self, client, service):
        service.disconnect.return_value = True

        response = client.post("/whatsapp/disconnect")

        assert response.json() == {"success": True}
        service.disconnect.assert_awaited_once_with("user-1")

    def test_sync_accepted(self, client, service):
        service.trigger_sync.return_value = SyncProgress()
        service.get_record.return_value = MagicMock(sync_status=MagicMock(value="pending"))

        response = client.post("/whatsapp/sync")

        assert response.status_code == 202
        assert response.json()["sync_status"] == "pending"


class TestActionRoutes:
    """Test message actions."""

    def test_send(self, client, service):
        service.send.return_value = RemoteMessage(
            id="true_5511000000002@c.us_1",
            chat_id="5511000000002@c.us",
            body="hello",
            from_me=True,
            timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

        response = client.post("/whatsapp/send", json={"to": "5511000000002", "message": "hello"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message_id"] == "true_5511000000002@c.us_1"
        service.send.assert_awaited_once_with("user-1", "5511000000002", "hello")

    def test_send_invalid_target(self, client, service):
        service.send.side_effect = ValueError("Invalid send target: 'abc'")

        response = client.post("/whatsapp/send", json={"to": "abc", "message": "hello"})

        assert response.status_code == 400

    def test_send_empty_message(self, client):
        response = client.post("/whatsapp/send", json={"to": "5511000000002", "message": ""})

        assert response.status_code == 422

    def test_edit_blank_content(self, client, service):
        response = client.post(
            "/whatsapp/edit-message", json={"wa_message_id": "m1", "new_content": "   "}
        )

        assert response.status_code == 400
        service.edit_message.assert_not_called()

    def test_delete(self, client, service):
        response = client.post(
            "/whatsapp/delete-message",
            json={"wa_message_id": "m1", "delete_for_everyone": True},
        )

        assert response.status_code == 200
        service.delete_message.assert_awaited_once_with("user-1", "m1", True)

    def test_react(self, client, service):
        response = client.post("/whatsapp/react-message", json={"wa_message_id": "m1", "emoji": "👍"})

        assert response.status_code == 200
        service.react_to_message.assert_awaited_once_with("user-1", "m1", "👍")

    def test_contacts(self, client, service):
        service.list_contacts.return_value = [
            RemoteContact(id="5511000000002@c.us", phone="5511000000002", name="Ana")
        ]

        body = client.get("/whatsapp/contacts").json()

        assert body["count"] == 1
        assert body["contacts"][0]["phone"] == "5511000000002"

    def test_messages_limit_bounds(self, client):
        response = client.get("/whatsapp/messages", params={"chat_id": "5511000000002", "limit": 500})

        assert response.status_code == 422


class TestErrorMapping:
    """Session conditions map to stable HTTP statuses."""

    @pytest.mark.parametrize(
        "error,status_code,code",
        [
            (NotConnected("WhatsApp is not connected"), 409, "not_connected"),
            (ActionTimeout("send_message", 10.0), 504, "timeout"),
            (MessageNotFound("Message m1 not found"), 404, "message_not_found"),
            (MessageNotEditable("Only messages you sent can be edited"), 403, "message_not_editable"),
            (AutomationError("page script failed"), 502, "automation_error"),
        ],
    )
    def test_messaging_errors(self, client, service, error, status_code, code):
        service.react_to_message.side_effect = error

        response = client.post("/whatsapp/react-message", json={"wa_message_id": "m1", "emoji": "👍"})

        assert response.status_code == status_code
        assert response.json()["error"] == code
        assert response.json()["detail"] == error.message


class TestAuthAndLimits:
    """Test auth dependencies and rate limit headers."""

    def test_missing_token(self, service):
        app.dependency_overrides[get_messaging_service] = lambda: service
        app.dependency_overrides[get_rate_limiter_store] = lambda: RateLimiterStore(None)
        try:
            response = TestClient(app).get("/whatsapp/status")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401

    def test_rate_limit_headers(self, client, service):
        redis = AsyncMock()
        redis.incr = AsyncMock(return_value=3)
        redis.ttl = AsyncMock(return_value=42)
        app.dependency_overrides[get_rate_limiter_store] = lambda: RateLimiterStore(redis)
        service.heartbeat.return_value = True

        response = client.post("/whatsapp/heartbeat")

        assert response.headers["X-RateLimit-Used"] == "3"
        assert response.headers["X-RateLimit-Reset"] == "42"

    def test_rate_limited(self, client, service):
        redis = AsyncMock()
        redis.incr = AsyncMock(return_value=10_000)
        redis.ttl = AsyncMock(return_value=30)
        app.dependency_overrides[get_rate_limiter_store] = lambda: RateLimiterStore(redis)

        response = client.post("/whatsapp/heartbeat")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        service.heartbeat.assert_not_called()

    def test_admin_requires_role(self, client):
        response = client.get("/admin/whatsapp/connected")

        assert response.status_code == 403

    def test_admin_sees_own_company(self, client, tenant, service):
        tenant.role = "admin"
        service.list_connected.return_value = [
            {"tenant_id": "user-1", "company_id": "co-1", "phone_number": "1",
             "connected_at": None, "sync_status": "completed"},
            {"tenant_id": "user-2", "company_id": "co-2", "phone_number": "2",
             "connected_at": None, "sync_status": "idle"},
        ]

        body = client.get("/admin/whatsapp/connected").json()

        assert body["count"] == 1
        assert body["sessions"][0]["tenant_id"] == "user-1"

    def test_admin_without_company_refused(self, client, tenant, service):
        tenant.role = "admin"
        tenant.company_id = None
        service.list_connected.return_value = [
            {"tenant_id": "user-2", "company_id": "co-2", "phone_number": "2",
             "connected_at": None, "sync_status": "idle"},
        ]

        response = client.get("/admin/whatsapp/connected")

        assert response.status_code == 403
        service.list_connected.assert_not_called()


class TestHealth:
    """Test readiness reporting."""

    @pytest.fixture
    def health_service(self):
        service = MagicMock()
        service.reaper.running = True
        service.registry.count_by_status.return_value = {"connected": 2, "qr_ready": 1}
        with patch("app.api.routes.health.get_messaging_service", return_value=service):
            yield service

    def test_live(self):
        response = TestClient(app).get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_ready(self, health_service):
        with patch("app.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
             patch("app.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = TestClient(app).get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["checks"] == {"database": "ok", "redis": "ok", "reaper": "ok"}
        assert body["sessions"]["total"] == 3

    def test_not_ready_when_reaper_stopped(self, health_service):
        health_service.reaper.running = False
        with patch("app.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
             patch("app.api.routes.health.check_redis_health", AsyncMock(side_effect=ConnectionError("down"))):
            response = TestClient(app).get("/health/ready")

        assert response.status_code == 503
        checks = response.json()["checks"]
        assert checks["reaper"] == "stopped"
        assert checks["redis"] == "error"
