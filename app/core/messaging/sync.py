"""
Sync Coordinator

Post-connect ingestion of recent chat history. Sync state lives next to the
connection state on the record but never changes it: a failed sync leaves a
connected session connected.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from app.config import get_settings
from .client import MessagingClient, RemoteChat
from .content import (
    STATUS_BROADCAST,
    ContactPhoneResolver,
    extract_message_content,
    is_group_chat,
    is_status_broadcast,
)
from .errors import NotConnected, SyncFailed
from .models import SessionRecord, SyncProgress
from .registry import SessionRegistry
from .relay import bounded_call
from .state import SyncStatus, can_sync_transition, is_sync_running
from .store import ConnectionStore, build_message_row

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Runs at most one sync pass per tenant at a time."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: ConnectionStore,
        resolver: Optional[ContactPhoneResolver] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.resolver = resolver or ContactPhoneResolver()
        self.max_chats = settings.sync_max_chats
        self.batch_size = max(1, settings.sync_batch_size)
        self.messages_per_chat = settings.sync_messages_per_chat
        self.action_timeout = settings.action_timeout_seconds
        self.bulk_timeout = settings.bulk_timeout_seconds

    def _set_status(self, record: SessionRecord, status: SyncStatus) -> None:
        if not can_sync_transition(record.sync_status, status):
            logger.warning(
                f"Invalid sync transition for tenant {record.tenant_id}: "
                f"{record.sync_status.value} -> {status.value}"
            )
            return
        record.sync_status = status

    def _require_connected(self, tenant_id: str) -> SessionRecord:
        record = self.registry.get(tenant_id)
        if record is None or not record.is_connected:
            raise NotConnected("WhatsApp is not connected", tenant_id)
        return record

    async def start_sync(self, tenant_id: str) -> SyncProgress:
        """
        Run a sync pass to completion.

        A call while a pass is pending or running returns the current
        progress without starting another one.
        """
        record = self._require_connected(tenant_id)
        if is_sync_running(record.sync_status):
            return record.sync_progress

        # Run on the record's sync task so releasing the session cancels it
        self.start_background(record)
        task = record.sync_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return record.sync_progress
            raise

    async def trigger_sync(self, tenant_id: str) -> SyncProgress:
        """Manual re-sync, run in the background."""
        record = self._require_connected(tenant_id)
        self.start_background(record)
        return record.sync_progress

    def start_background(self, record: SessionRecord) -> None:
        """Schedule a pass on the record's sync task."""
        if is_sync_running(record.sync_status):
            return
        # Claim the pass before yielding so concurrent callers see it running
        self._set_status(record, SyncStatus.PENDING)
        record.sync_progress = SyncProgress(started_at=_utcnow())
        record.sync_task = asyncio.create_task(
            self._run(record), name=f"wa-sync-{record.tenant_id}"
        )

    async def _run(self, record: SessionRecord) -> SyncProgress:
        progress = record.sync_progress

        logger.info(f"Sync started for tenant {record.tenant_id}")
        try:
            self._set_status(record, SyncStatus.SYNCING)
            await self._sync(record, progress)
            self._set_status(record, SyncStatus.COMPLETED)
            logger.info(
                f"Sync complete for tenant {record.tenant_id}: "
                f"{progress.chats_done}/{progress.chats_total} chats, "
                f"{progress.messages_written} messages, {progress.chats_failed} failed"
            )
        except asyncio.CancelledError:
            progress.error = "Sync cancelled"
            self._set_status(record, SyncStatus.ERROR)
            raise
        except Exception as e:
            logger.error(f"Sync failed for tenant {record.tenant_id}: {e}")
            progress.error = str(e)
            record.last_error = f"Sync failed: {e}"
            self._set_status(record, SyncStatus.ERROR)
        finally:
            progress.finished_at = _utcnow()

        return progress

    def _handle(self, record: SessionRecord) -> MessagingClient:
        handle = record.live_handle
        if handle is None or not record.is_connected:
            raise SyncFailed("Session closed during sync", record.tenant_id)
        return handle

    async def _sync(self, record: SessionRecord, progress: SyncProgress) -> None:
        if record.connection_id is None:
            raise SyncFailed("No persisted connection for this session", record.tenant_id)

        chats = await bounded_call(
            self._handle(record).list_chats(), self.bulk_timeout, "list_chats", record.tenant_id
        )
        individual = [
            chat for chat in chats
            if not chat.is_group and not is_group_chat(chat.id) and chat.id != STATUS_BROADCAST
        ][: self.max_chats]
        progress.chats_total = len(individual)

        for start in range(0, len(individual), self.batch_size):
            handle = self._handle(record)
            batch = individual[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self._sync_chat(record, handle, chat) for chat in batch),
                return_exceptions=True,
            )
            for chat, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    progress.chats_failed += 1
                    logger.warning(f"Sync of chat {chat.id} failed for tenant {record.tenant_id}: {result}")
                else:
                    progress.chats_done += 1
                    progress.messages_written += result
            await asyncio.sleep(0)

        await self._sync_contacts(record, progress)

    async def _sync_chat(self, record: SessionRecord, handle: MessagingClient, chat: RemoteChat) -> int:
        """Store the latest messages of one chat. Returns rows written."""
        contact_phone = self.resolver.resolve(chat.id, record.phone_number, chat.contact_number)
        if not contact_phone:
            return 0

        messages = await bounded_call(
            handle.fetch_messages(chat.id, self.messages_per_chat),
            self.action_timeout,
            "fetch_messages",
            record.tenant_id,
        )
        if not messages:
            return 0

        contact_name = chat.contact_name or chat.name
        rows = []
        latest = None
        for msg in messages:
            if is_status_broadcast(msg):
                continue
            extracted = extract_message_content(msg)
            if extracted is None:
                continue
            rows.append(build_message_row(
                record.connection_id,
                record.tenant_id,
                record.company_id,
                msg,
                contact_phone,
                contact_name,
                extracted,
            ))
            if latest is None or msg.timestamp >= latest[0].timestamp:
                latest = (msg, extracted)

        written = await self.store.save_messages(rows)

        if latest is not None:
            msg, extracted = latest
            await self.store.upsert_conversation(
                connection_id=record.connection_id,
                user_id=record.tenant_id,
                company_id=record.company_id,
                contact_phone=contact_phone,
                contact_name=contact_name,
                last_message_at=msg.timestamp,
                preview=extracted.preview,
                message_count=len(rows),
            )
        return written

    async def _sync_contacts(self, record: SessionRecord, progress: SyncProgress) -> None:
        try:
            contacts = await bounded_call(
                self._handle(record).list_contacts(),
                self.bulk_timeout,
                "list_contacts",
                record.tenant_id,
            )
            progress.contacts_written = await self.store.upsert_contacts(
                record.tenant_id, record.company_id, contacts
            )
        except SyncFailed:
            raise
        except Exception as e:
            logger.warning(f"Contact sync failed for tenant {record.tenant_id}: {e}")
