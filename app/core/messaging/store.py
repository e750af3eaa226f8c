"""
Connection Store

Every read and write the session core issues against the relational store.
Rows here are an eventually-consistent cache of the live registry; nothing
in this module decides whether a session is alive.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.database import (
    ConnectionStatus,
    Employee,
    MessageDirection,
    WhatsAppConnection,
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
)
from .client import RemoteContact, RemoteMessage
from .content import ExtractedContent

logger = logging.getLogger(__name__)

REVOKED_TYPE = "revoked"


def _naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Columns store naive UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_message_row(
    connection_id: uuid.UUID,
    user_id: str,
    company_id: Optional[str],
    msg: RemoteMessage,
    contact_phone: str,
    contact_name: Optional[str],
    extracted: ExtractedContent,
) -> dict:
    """Column values for one ``whatsapp_messages`` row."""
    return {
        "connection_id": connection_id,
        "user_id": user_id,
        "company_id": company_id,
        "wa_message_id": msg.id,
        "contact_phone": contact_phone,
        "contact_name": contact_name,
        "direction": MessageDirection.OUTBOUND if msg.from_me else MessageDirection.INBOUND,
        "message_type": extracted.message_type,
        "content": extracted.content,
        "media_mime_type": extracted.media_mime_type,
        "message_timestamp": _naive(msg.timestamp),
        "status": "sent" if msg.from_me else "delivered",
        "raw_payload": {
            "type": msg.type,
            "has_media": msg.has_media,
            "from": msg.sender,
            "to": msg.recipient,
            "original_chat_id": msg.chat_id,
            "is_lid": msg.chat_id.endswith("@lid"),
        },
    }


class ConnectionStore:
    """
    Async persistence gateway for connections, messages, conversations and
    contacts.

    The session factory is injectable so tests can point the store at an
    in-memory database.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from app.infra.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # =========================================================================
    # Connections
    # =========================================================================

    async def get_connection(self, user_id: str) -> Optional[WhatsAppConnection]:
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppConnection).where(WhatsAppConnection.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_active_connection(self, user_id: str) -> Optional[WhatsAppConnection]:
        """Persisted row claiming an active connection, if any."""
        connection = await self.get_connection(user_id)
        if connection is not None and connection.status == ConnectionStatus.ACTIVE:
            return connection
        return None

    async def upsert_active_connection(
        self,
        user_id: str,
        company_id: Optional[str],
        phone_number: Optional[str],
    ) -> uuid.UUID:
        """
        Record a freshly connected session.

        Returns:
            The connection row id
        """
        now = _now()
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppConnection).where(WhatsAppConnection.user_id == user_id)
            )
            connection = result.scalar_one_or_none()

            if connection is None:
                connection = WhatsAppConnection(user_id=user_id)
                db.add(connection)

            connection.company_id = company_id
            connection.display_phone_number = phone_number
            connection.status = ConnectionStatus.ACTIVE
            connection.connected_at = now
            connection.last_seen_at = now
            connection.updated_at = now
            await db.flush()

            logger.info(f"Connection saved for user {user_id}: {connection.id}")
            return connection.id

    async def _set_status(self, user_id: str, status: ConnectionStatus) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(WhatsAppConnection)
                .where(WhatsAppConnection.user_id == user_id)
                .values(status=status, updated_at=_now())
            )
            return result.rowcount > 0

    async def mark_stale(self, user_id: str) -> bool:
        return await self._set_status(user_id, ConnectionStatus.STALE)

    async def mark_disconnected(self, user_id: str) -> bool:
        return await self._set_status(user_id, ConnectionStatus.DISCONNECTED)

    async def delete_connection(self, user_id: str) -> bool:
        """Delete the connection row with its messages and conversations."""
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppConnection.id).where(WhatsAppConnection.user_id == user_id)
            )
            connection_id = result.scalar_one_or_none()
            if connection_id is None:
                return False

            await db.execute(
                delete(WhatsAppMessage).where(WhatsAppMessage.connection_id == connection_id)
            )
            await db.execute(
                delete(WhatsAppConversation).where(
                    WhatsAppConversation.connection_id == connection_id
                )
            )
            await db.execute(
                delete(WhatsAppConnection).where(WhatsAppConnection.id == connection_id)
            )
            return True

    # =========================================================================
    # Messages
    # =========================================================================

    async def existing_message_ids(self, user_id: str, ids: Iterable[str]) -> set[str]:
        ids = list(ids)
        if not ids:
            return set()
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppMessage.wa_message_id).where(
                    WhatsAppMessage.user_id == user_id,
                    WhatsAppMessage.wa_message_id.in_(ids),
                )
            )
            return set(result.scalars().all())

    async def save_message(self, row: dict) -> bool:
        """
        Insert one message row.

        Returns:
            False if the message was already stored
        """
        try:
            async with self._session() as db:
                db.add(WhatsAppMessage(**row))
            return True
        except IntegrityError:
            logger.debug(f"Message {row['wa_message_id']} already stored")
            return False

    async def save_messages(self, rows: list[dict]) -> int:
        """
        Insert a batch of message rows, skipping ids already stored.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        user_id = rows[0]["user_id"]
        existing = await self.existing_message_ids(user_id, [r["wa_message_id"] for r in rows])

        fresh = []
        seen = set(existing)
        for row in rows:
            if row["wa_message_id"] in seen:
                continue
            seen.add(row["wa_message_id"])
            fresh.append(row)

        if not fresh:
            return 0

        async with self._session() as db:
            db.add_all([WhatsAppMessage(**row) for row in fresh])
        return len(fresh)

    async def get_message(self, user_id: str, wa_message_id: str) -> Optional[WhatsAppMessage]:
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppMessage).where(
                    WhatsAppMessage.user_id == user_id,
                    WhatsAppMessage.wa_message_id == wa_message_id,
                )
            )
            return result.scalar_one_or_none()

    async def update_message_content(self, user_id: str, wa_message_id: str, content: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(WhatsAppMessage)
                .where(
                    WhatsAppMessage.user_id == user_id,
                    WhatsAppMessage.wa_message_id == wa_message_id,
                )
                .values(content=content, updated_at=_now())
            )
            return result.rowcount > 0

    async def redact_message(self, user_id: str, wa_message_id: str) -> bool:
        """Keep the row of a message revoked for everyone, without its content."""
        async with self._session() as db:
            result = await db.execute(
                update(WhatsAppMessage)
                .where(
                    WhatsAppMessage.user_id == user_id,
                    WhatsAppMessage.wa_message_id == wa_message_id,
                )
                .values(
                    content="",
                    message_type=REVOKED_TYPE,
                    media_mime_type=None,
                    updated_at=_now(),
                )
            )
            return result.rowcount > 0

    async def remove_message(self, user_id: str, wa_message_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(WhatsAppMessage).where(
                    WhatsAppMessage.user_id == user_id,
                    WhatsAppMessage.wa_message_id == wa_message_id,
                )
            )
            return result.rowcount > 0

    # =========================================================================
    # Conversations and contacts
    # =========================================================================

    async def upsert_conversation(
        self,
        connection_id: uuid.UUID,
        user_id: str,
        company_id: Optional[str],
        contact_phone: str,
        contact_name: Optional[str],
        last_message_at: datetime,
        preview: str,
        inbound: bool = False,
        message_count: Optional[int] = None,
    ) -> None:
        """
        Create or refresh a conversation summary.

        With ``message_count`` the stored count is replaced (sync);
        without it the count is incremented (live ingestion).
        """
        last_message_at = _naive(last_message_at)
        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppConversation).where(
                    WhatsAppConversation.connection_id == connection_id,
                    WhatsAppConversation.contact_phone == contact_phone,
                )
            )
            conversation = result.scalar_one_or_none()

            if conversation is None:
                conversation = WhatsAppConversation(
                    connection_id=connection_id,
                    user_id=user_id,
                    company_id=company_id,
                    contact_phone=contact_phone,
                    unread_count=0,
                    message_count=0,
                )
                db.add(conversation)

            if contact_name:
                conversation.contact_name = contact_name

            if message_count is not None:
                conversation.message_count = message_count
            else:
                conversation.message_count = (conversation.message_count or 0) + 1
                if inbound:
                    conversation.unread_count = (conversation.unread_count or 0) + 1
                else:
                    conversation.unread_count = 0

            if conversation.last_message_at is None or last_message_at >= conversation.last_message_at:
                conversation.last_message_at = last_message_at
                conversation.last_message_preview = preview[:255]
            conversation.updated_at = _now()

    async def upsert_contacts(
        self,
        user_id: str,
        company_id: Optional[str],
        contacts: list[RemoteContact],
    ) -> int:
        """
        Refresh the stored address book.

        Returns:
            Number of contacts written
        """
        if not contacts:
            return 0

        async with self._session() as db:
            result = await db.execute(
                select(WhatsAppContact).where(
                    WhatsAppContact.user_id == user_id,
                    WhatsAppContact.contact_id.in_([c.id for c in contacts]),
                )
            )
            known = {row.contact_id: row for row in result.scalars().all()}

            for contact in contacts:
                row = known.get(contact.id)
                if row is None:
                    row = WhatsAppContact(user_id=user_id, contact_id=contact.id)
                    db.add(row)
                    known[contact.id] = row
                row.company_id = company_id
                row.phone = contact.phone
                row.name = contact.name
                row.pushname = contact.pushname
                row.is_my_contact = contact.is_my_contact
                row.updated_at = _now()

        return len(contacts)

    # =========================================================================
    # Identity
    # =========================================================================

    async def get_employee(self, user_id: str) -> Optional[Employee]:
        async with self._session() as db:
            result = await db.execute(select(Employee).where(Employee.user_id == user_id))
            return result.scalar_one_or_none()
