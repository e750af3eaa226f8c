"""Tests for heartbeat tracking and idle eviction."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from app.core.messaging.reaper import SessionReaper
from app.core.messaging.registry import SessionRegistry
from app.core.messaging.state import SessionStatus
from tests.fakes import FakeClientFactory, make_service, make_store


class TestSessionReaper:
    """Test TTL sweeps."""

    @pytest.fixture
    def factory(self):
        return FakeClientFactory()

    @pytest.fixture
    def store(self):
        return make_store()

    @pytest.fixture
    def registry(self, factory):
        return SessionRegistry(factory, release_grace_seconds=0.05)

    @pytest.fixture
    def reaper(self, registry, store):
        return SessionReaper(registry, store, pairing_ttl=300, connected_ttl=1800, interval=60)

    @pytest.mark.asyncio
    async def test_fresh_sessions_kept(self, reaper, registry):
        await registry.get_or_create("user-1", "co-1")

        assert await reaper.sweep() == []
        assert registry.get("user-1") is not None

    @pytest.mark.asyncio
    async def test_idle_pairing_session_evicted(self, reaper, registry, factory, store):
        record = await registry.get_or_create("user-1", "co-1")
        later = datetime.now(timezone.utc) + timedelta(seconds=301)

        evicted = await reaper.sweep(now=later)

        assert evicted == ["user-1"]
        assert registry.get("user-1") is None
        assert record.status == SessionStatus.DISCONNECTED
        assert record.last_error == "Idle timeout"
        assert factory.last.close_calls == 1
        store.mark_stale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connected_session_has_longer_ttl(self, reaper, registry):
        record = await registry.get_or_create("user-1", "co-1")
        record.mark_connected("5511000000001")

        later = datetime.now(timezone.utc) + timedelta(seconds=600)
        assert await reaper.sweep(now=later) == []

    @pytest.mark.asyncio
    async def test_idle_connected_session_marked_stale(self, reaper, registry, store):
        record = await registry.get_or_create("user-1", "co-1")
        record.mark_connected("5511000000001")
        later = datetime.now(timezone.utc) + timedelta(seconds=1801)

        evicted = await reaper.sweep(now=later)

        assert evicted == ["user-1"]
        store.mark_stale.assert_awaited_once_with("user-1")

    @pytest.mark.asyncio
    async def test_store_failure_still_evicts(self, reaper, registry, store):
        record = await registry.get_or_create("user-1", "co-1")
        record.mark_connected("5511000000001")
        store.mark_stale.side_effect = OperationalError("UPDATE", {}, Exception("down"))
        later = datetime.now(timezone.utc) + timedelta(seconds=1801)

        assert await reaper.sweep(now=later) == ["user-1"]
        assert registry.get("user-1") is None

    @pytest.mark.asyncio
    async def test_touch_keeps_session_alive(self, reaper, registry):
        record = await registry.get_or_create("user-1", "co-1")
        record.touch(datetime.now(timezone.utc) - timedelta(seconds=400))

        assert reaper.touch("user-1")
        assert await reaper.sweep() == []

    def test_touch_unknown_tenant(self, reaper):
        assert not reaper.touch("nobody")

    @pytest.mark.asyncio
    async def test_start_stop(self, reaper):
        reaper.start()
        assert reaper.running

        await reaper.stop()
        assert not reaper.running


class TestEvictionAndRepairing:
    """An abandoned pairing attempt does not block the next one."""

    @pytest_asyncio.fixture
    async def harness(self):
        service, factory, store = make_service(auto_qr="2@pairing-code-1")
        yield service, factory, store
        await service.registry.close_all()

    @pytest.mark.asyncio
    async def test_unconfirmed_pairing_evicted_then_reinitialized(self, harness):
        service, factory, _ = harness
        first = await service.initialize("user-1", "co-1")
        abandoned = service.get_record("user-1")
        assert first.pairing_code == "2@pairing-code-1"

        later = datetime.now(timezone.utc) + timedelta(seconds=service.reaper.pairing_ttl + 1)
        assert await service.reaper.sweep(now=later) == ["user-1"]
        assert abandoned.live_handle is None
        assert factory.created[0].close_calls == 1

        factory.client_kwargs["auto_qr"] = "2@pairing-code-2"
        result = await service.initialize("user-1", "co-1")

        assert result.status == "qr_ready"
        assert result.pairing_code == "2@pairing-code-2"
        assert len(factory.created) == 2
        assert service.get_record("user-1") is not abandoned
