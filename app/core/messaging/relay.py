"""
Action Relay

Outbound actions mediated through a tenant's live handle. Every call is
bounded by a timeout; a timeout means the outcome is unknown, so it leaves
the session state and the heartbeat untouched and is never retried.

Retry policy: lookups (resolve message, list contacts, fetch messages) are
retried on automation errors with exponential backoff. Mutations (send,
edit, delete, react) run exactly once.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from .client import MessagingClient, RemoteContact, RemoteMessage
from .content import to_chat_id
from .errors import (
    ActionTimeout,
    AutomationError,
    MessageNotEditable,
    MessageNotFound,
    NotConnected,
)
from .ingest import MessageIngestor
from .models import SessionRecord
from .registry import SessionRegistry
from .store import ConnectionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded_call(
    awaitable: Awaitable[T],
    timeout: float,
    action: str,
    tenant_id: Optional[str] = None,
) -> T:
    """
    Await a handle call under a timeout.

    Raises:
        ActionTimeout: If the call did not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{action} timed out after {timeout:g}s for tenant {tenant_id}")
        raise ActionTimeout(action, timeout, tenant_id) from None


class ActionRelay:
    """Send, edit, delete, react and read through the live handle."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: ConnectionStore,
        ingestor: MessageIngestor,
    ):
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.ingestor = ingestor
        self.action_timeout = settings.action_timeout_seconds
        self.bulk_timeout = settings.bulk_timeout_seconds
        self.max_retries = settings.action_max_retries
        self.retry_backoff = settings.action_retry_backoff

    def _require_connected(self, tenant_id: str) -> tuple[SessionRecord, MessagingClient]:
        record = self.registry.get(tenant_id)
        if record is None or not record.is_connected:
            raise NotConnected("WhatsApp is not connected", tenant_id)
        return record, record.live_handle

    async def _lookup(
        self,
        record: SessionRecord,
        action: str,
        call: Callable[[], Awaitable[T]],
        timeout: float,
    ) -> T:
        """
        Run a read-only handle call with retry on automation errors.

        Timeouts propagate immediately.
        """
        attempt = 0
        while True:
            try:
                return await bounded_call(call(), timeout, action, record.tenant_id)
            except AutomationError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"{action} failed for tenant {record.tenant_id} "
                    f"(attempt {attempt}/{self.max_retries + 1}): {e}. Retrying in {delay:g}s"
                )
                await asyncio.sleep(delay)
                if not record.is_connected:
                    raise NotConnected("WhatsApp disconnected during retry", record.tenant_id)

    async def _resolve_message(
        self,
        record: SessionRecord,
        handle: MessagingClient,
        message_id: str,
    ) -> RemoteMessage:
        msg = await self._lookup(
            record,
            "get_message",
            lambda: handle.get_message(message_id),
            self.action_timeout,
        )
        if msg is None:
            raise MessageNotFound(f"Message {message_id} not found", record.tenant_id)
        return msg

    async def _write_through(self, tenant_id: str, action: str, write: Awaitable[Any]) -> None:
        """Store writes after a remote success never fail the action."""
        try:
            await write
        except SQLAlchemyError as e:
            logger.error(f"Store update after {action} failed for tenant {tenant_id}: {e}")

    async def send(self, tenant_id: str, target: str, content: str) -> RemoteMessage:
        """
        Send a text message.

        Args:
            tenant_id: Sending tenant
            target: Phone number or chat id
            content: Message text

        Returns:
            The created message
        """
        record, handle = self._require_connected(tenant_id)
        chat_id = to_chat_id(target)

        sent = await bounded_call(
            handle.send_message(chat_id, content),
            self.action_timeout,
            "send_message",
            tenant_id,
        )
        record.touch()

        sent.from_me = True
        if not sent.recipient:
            sent.recipient = chat_id
        if not sent.chat_id:
            sent.chat_id = chat_id

        await self.ingestor.ingest(record, sent)
        logger.info(f"Message sent for tenant {tenant_id} to {chat_id}: {sent.id}")
        return sent

    async def edit_message(self, tenant_id: str, message_id: str, content: str) -> None:
        """Edit a message previously sent by the tenant."""
        record, handle = self._require_connected(tenant_id)
        content = content.strip()

        msg = await self._resolve_message(record, handle, message_id)
        if not msg.from_me:
            raise MessageNotEditable("Only messages you sent can be edited", tenant_id)

        edited = await bounded_call(
            handle.edit_message(message_id, content),
            self.action_timeout,
            "edit_message",
            tenant_id,
        )
        if not edited:
            raise MessageNotEditable("This message can no longer be edited", tenant_id)
        record.touch()

        await self._write_through(
            tenant_id, "edit", self.store.update_message_content(tenant_id, message_id, content)
        )

    async def delete_message(self, tenant_id: str, message_id: str, for_everyone: bool = False) -> None:
        """
        Delete a message.

        For everyone the stored row is kept with its content redacted;
        for the tenant only the stored row is removed.
        """
        record, handle = self._require_connected(tenant_id)

        await self._resolve_message(record, handle, message_id)
        await bounded_call(
            handle.delete_message(message_id, for_everyone),
            self.action_timeout,
            "delete_message",
            tenant_id,
        )
        record.touch()

        if for_everyone:
            write = self.store.redact_message(tenant_id, message_id)
        else:
            write = self.store.remove_message(tenant_id, message_id)
        await self._write_through(tenant_id, "delete", write)

    async def react_to_message(self, tenant_id: str, message_id: str, emoji: str) -> None:
        record, handle = self._require_connected(tenant_id)

        await self._resolve_message(record, handle, message_id)
        await bounded_call(
            handle.react(message_id, emoji),
            self.action_timeout,
            "react",
            tenant_id,
        )
        record.touch()

    async def list_contacts(self, tenant_id: str) -> list[RemoteContact]:
        """List address-book contacts and refresh the stored copy."""
        record, handle = self._require_connected(tenant_id)

        contacts = await self._lookup(
            record, "list_contacts", handle.list_contacts, self.bulk_timeout
        )
        record.touch()

        await self._write_through(
            tenant_id,
            "list_contacts",
            self.store.upsert_contacts(tenant_id, record.company_id, contacts),
        )
        return contacts

    async def fetch_messages(self, tenant_id: str, chat_id: str, limit: int = 50) -> list[RemoteMessage]:
        record, handle = self._require_connected(tenant_id)
        chat_id = to_chat_id(chat_id)

        messages = await self._lookup(
            record,
            "fetch_messages",
            lambda: handle.fetch_messages(chat_id, limit),
            self.action_timeout,
        )
        record.touch()
        return messages
