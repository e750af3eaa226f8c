"""Tests for the sync coordinator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from app.core.messaging.client import RemoteChat, RemoteContact, RemoteMessage
from app.core.messaging.errors import AutomationError, NotConnected
from app.core.messaging.state import SessionStatus, SyncStatus
from tests.fakes import connect, make_service, wait_until


def _history(chat_id: str, count: int) -> list[RemoteMessage]:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return [
        RemoteMessage(
            id=f"false_{chat_id}_{i}",
            chat_id=chat_id,
            body=f"message {i}",
            sender=chat_id,
            timestamp=base + timedelta(minutes=i),
        )
        for i in range(count)
    ]


@pytest_asyncio.fixture
async def connected():
    service, factory, store = make_service()
    record, client = await connect(service)
    store.reset_mock()
    yield service, record, client, store
    await service.registry.close_all()


class TestStartSync:
    """Test a full sync pass."""

    @pytest.mark.asyncio
    async def test_syncs_individual_chats(self, connected):
        service, record, client, store = connected
        client.chats = [
            RemoteChat(id="5511000000002@c.us", name="Ana"),
            RemoteChat(id="5511000000003@c.us", name="Bruno"),
            RemoteChat(id="120363000000@g.us", name="Team", is_group=True),
            RemoteChat(id="status@broadcast"),
        ]
        client.chat_messages = {
            "5511000000002@c.us": _history("5511000000002@c.us", 3),
            "5511000000003@c.us": _history("5511000000003@c.us", 2),
        }

        progress = await service.sync.start_sync("user-1")

        assert record.sync_status == SyncStatus.COMPLETED
        assert progress.chats_total == 2
        assert progress.chats_done == 2
        assert progress.messages_written == 5
        assert progress.finished_at is not None
        assert store.save_messages.await_count == 2
        assert store.upsert_conversation.await_count == 2

    @pytest.mark.asyncio
    async def test_conversation_uses_latest_message(self, connected):
        service, _, client, store = connected
        client.chats = [RemoteChat(id="5511000000002@c.us", name="Ana")]
        client.chat_messages = {"5511000000002@c.us": _history("5511000000002@c.us", 3)}

        await service.sync.start_sync("user-1")

        kwargs = store.upsert_conversation.await_args.kwargs
        assert kwargs["contact_phone"] == "5511000000002"
        assert kwargs["contact_name"] == "Ana"
        assert kwargs["preview"] == "message 2"
        assert kwargs["message_count"] == 3

    @pytest.mark.asyncio
    async def test_chat_limit(self, connected):
        service, _, client, _ = connected
        service.sync.max_chats = 2
        client.chats = [RemoteChat(id=f"55110000000{i:02d}@c.us") for i in range(5)]

        progress = await service.sync.start_sync("user-1")

        assert progress.chats_total == 2

    @pytest.mark.asyncio
    async def test_failed_chat_counted(self, connected):
        service, record, client, _ = connected
        client.chats = [
            RemoteChat(id="5511000000002@c.us"),
            RemoteChat(id="5511000000003@c.us"),
        ]
        client.chat_messages = {"5511000000002@c.us": _history("5511000000002@c.us", 1)}
        client.chat_errors = {"5511000000003@c.us": AutomationError("chat not loaded")}

        progress = await service.sync.start_sync("user-1")

        assert record.sync_status == SyncStatus.COMPLETED
        assert progress.chats_done == 1
        assert progress.chats_failed == 1

    @pytest.mark.asyncio
    async def test_contacts_written(self, connected):
        service, _, client, store = connected
        client.contacts = [RemoteContact(id="5511000000002@c.us", phone="5511000000002", name="Ana")]

        progress = await service.sync.start_sync("user-1")

        assert progress.contacts_written == 1
        store.upsert_contacts.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_keeps_session_connected(self, connected):
        service, record, client, _ = connected
        client.lookup_failures = 1

        progress = await service.sync.start_sync("user-1")

        assert record.sync_status == SyncStatus.ERROR
        assert record.status == SessionStatus.CONNECTED
        assert progress.error == "page script failed"
        assert record.last_error.startswith("Sync failed")

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_one_pass(self, connected):
        service, record, client, store = connected
        client.lookup_calls = 0
        client.chats = [
            RemoteChat(id="5511000000002@c.us", name="Ana"),
            RemoteChat(id="5511000000003@c.us", name="Bruno"),
        ]
        client.chat_messages = {
            "5511000000002@c.us": _history("5511000000002@c.us", 3),
            "5511000000003@c.us": _history("5511000000003@c.us", 2),
        }

        first, second = await asyncio.gather(
            service.sync.start_sync("user-1"),
            service.sync.start_sync("user-1"),
        )
        await wait_until(lambda: record.sync_status == SyncStatus.COMPLETED)

        assert first is second
        assert store.save_messages.await_count == 2
        assert first.messages_written == 5
        # list_chats, one fetch per chat, list_contacts
        assert client.lookup_calls == 4

    @pytest.mark.asyncio
    async def test_release_cancels_running_pass(self, connected):
        service, record, client, store = connected
        client.delay = 0.5
        client.chats = [RemoteChat(id="5511000000002@c.us")]

        running = asyncio.create_task(service.sync.start_sync("user-1"))
        await wait_until(lambda: record.sync_status == SyncStatus.SYNCING)
        await service.registry.remove("user-1")
        progress = await asyncio.wait_for(running, timeout=0.3)

        assert record.sync_task.cancelled()
        assert record.sync_status == SyncStatus.ERROR
        assert progress.error == "Sync cancelled"
        store.save_messages.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_connected(self):
        service, _, _ = make_service()

        with pytest.raises(NotConnected):
            await service.sync.start_sync("user-1")


class TestBackgroundSync:
    """Test the background trigger."""

    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, connected):
        service, record, client, _ = connected
        client.chats = [RemoteChat(id="5511000000002@c.us")]
        client.chat_messages = {"5511000000002@c.us": _history("5511000000002@c.us", 2)}

        progress = await service.trigger_sync("user-1")

        assert record.sync_status == SyncStatus.PENDING
        await wait_until(lambda: record.sync_status == SyncStatus.COMPLETED)
        assert progress.messages_written == 2

    @pytest.mark.asyncio
    async def test_second_trigger_is_noop(self, connected):
        service, record, client, _ = connected
        client.delay = 0.05
        client.chats = [RemoteChat(id="5511000000002@c.us")]

        first = await service.trigger_sync("user-1")
        task = record.sync_task
        second = await service.trigger_sync("user-1")
        running = await service.sync.start_sync("user-1")

        assert first is second is running
        assert record.sync_task is task
        await wait_until(lambda: record.sync_status == SyncStatus.COMPLETED)
