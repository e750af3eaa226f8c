"""Persistence of live messages seen by a connected session."""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .client import RemoteMessage
from .content import (
    ContactPhoneResolver,
    extract_message_content,
    is_group_chat,
    is_status_broadcast,
)
from .models import SessionRecord
from .store import ConnectionStore, build_message_row

logger = logging.getLogger(__name__)


class MessageIngestor:
    """
    Writes one message (and its conversation summary) per call.

    Group chats, status broadcasts, notifications and messages to the
    tenant's own number are skipped.
    """

    def __init__(self, store: ConnectionStore, resolver: Optional[ContactPhoneResolver] = None):
        self.store = store
        self.resolver = resolver or ContactPhoneResolver()

    def counterparty(self, record: SessionRecord, msg: RemoteMessage) -> Optional[str]:
        """Conversation phone key of a message, or None if it is not stored."""
        target = (msg.recipient if msg.from_me else msg.sender) or msg.chat_id
        return self.resolver.resolve(target, record.phone_number, msg.contact_number)

    async def ingest(self, record: SessionRecord, msg: RemoteMessage) -> bool:
        """
        Persist a live message.

        Returns:
            True if a new row was written
        """
        if record.connection_id is None:
            logger.debug(f"No connection row for tenant {record.tenant_id}, message skipped")
            return False
        if msg.is_group or is_group_chat(msg.chat_id) or is_status_broadcast(msg):
            return False

        contact_phone = self.counterparty(record, msg)
        if not contact_phone:
            return False

        extracted = extract_message_content(msg)
        if extracted is None:
            return False

        row = build_message_row(
            record.connection_id,
            record.tenant_id,
            record.company_id,
            msg,
            contact_phone,
            msg.contact_name,
            extracted,
        )

        try:
            saved = await self.store.save_message(row)
            if saved:
                await self.store.upsert_conversation(
                    connection_id=record.connection_id,
                    user_id=record.tenant_id,
                    company_id=record.company_id,
                    contact_phone=contact_phone,
                    contact_name=msg.contact_name,
                    last_message_at=msg.timestamp,
                    preview=extracted.preview,
                    inbound=not msg.from_me,
                )
            return saved
        except SQLAlchemyError as e:
            logger.error(f"Failed to store message {msg.id} for tenant {record.tenant_id}: {e}")
            return False
