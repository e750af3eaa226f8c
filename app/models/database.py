"""
Database Models

SQLAlchemy ORM models for the multi-tenant messaging session manager.

The relational store is an eventually-consistent cache of the live session
registry: a row saying ``active`` is never proof that a browser handle exists.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
    Enum as SQLEnum, JSON, Uuid, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class ConnectionStatus(str, Enum):
    """Persisted connection status enumeration."""
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    STALE = "stale"


class MessageDirection(str, Enum):
    """Message direction enumeration."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EmployeeRole(str, Enum):
    """Employee role enumeration."""
    SELLER = "seller"
    MANAGER = "manager"
    ADMIN = "admin"


class Employee(Base, TimestampMixin):
    """
    Employee model.

    Maps an identity-provider user to the company (tenant group) it
    belongs to. Read-only from the session manager's point of view.
    """

    __tablename__ = "employees"
    __table_args__ = (
        Index("idx_employee_company", "company_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[EmployeeRole] = mapped_column(
        SQLEnum(EmployeeRole),
        default=EmployeeRole.SELLER
    )

    def __repr__(self) -> str:
        return f"<Employee(user_id={self.user_id}, company_id={self.company_id}, role={self.role.value})>"


class WhatsAppConnection(Base, TimestampMixin):
    """
    WhatsApp connection model.

    One row per tenant user. Written when a session reaches ``connected``,
    marked ``disconnected`` on remote logout and ``stale`` when the reaper
    evicts an idle session or a fresh pairing replaces a dead one.
    """

    __tablename__ = "whatsapp_connections"
    __table_args__ = (
        Index("idx_connection_company", "company_id"),
        Index("idx_connection_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    display_phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[ConnectionStatus] = mapped_column(
        SQLEnum(ConnectionStatus),
        default=ConnectionStatus.ACTIVE
    )
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    messages: Mapped[List["WhatsAppMessage"]] = relationship(
        "WhatsAppMessage",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    conversations: Mapped[List["WhatsAppConversation"]] = relationship(
        "WhatsAppConversation",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<WhatsAppConnection(id={self.id}, user_id={self.user_id}, "
            f"status={self.status.value})>"
        )


class WhatsAppMessage(Base, TimestampMixin):
    """
    WhatsApp message model.

    Messages are keyed by the remote message id and the owning user.
    A message deleted "for everyone" keeps its row with the content
    redacted; one deleted "for me" loses its row.
    """

    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        UniqueConstraint("user_id", "wa_message_id", name="uq_message_user_wa_id"),
        Index("idx_message_conversation", "connection_id", "contact_phone", "message_timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("whatsapp_connections.id", ondelete="CASCADE"),
        nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    wa_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    direction: Mapped[MessageDirection] = mapped_column(
        SQLEnum(MessageDirection),
        nullable=False
    )
    message_type: Mapped[str] = mapped_column(String(32), default="text")
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    message_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="sent")
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Relationships
    connection: Mapped["WhatsAppConnection"] = relationship(
        "WhatsAppConnection",
        back_populates="messages"
    )

    def __repr__(self) -> str:
        return (
            f"<WhatsAppMessage(wa_message_id={self.wa_message_id}, "
            f"direction={self.direction.value}, type='{self.message_type}')>"
        )


class WhatsAppConversation(Base, TimestampMixin):
    """
    WhatsApp conversation summary.

    One row per (connection, counterparty) with the latest message preview.
    """

    __tablename__ = "whatsapp_conversations"
    __table_args__ = (
        UniqueConstraint("connection_id", "contact_phone", name="uq_conversation_contact"),
        Index("idx_conversation_user", "user_id", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("whatsapp_connections.id", ondelete="CASCADE"),
        nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_message_preview: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    message_count: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    connection: Mapped["WhatsAppConnection"] = relationship(
        "WhatsAppConnection",
        back_populates="conversations"
    )

    def __repr__(self) -> str:
        return (
            f"<WhatsAppConversation(contact_phone='{self.contact_phone}', "
            f"messages={self.message_count})>"
        )


class WhatsAppContact(Base, TimestampMixin):
    """
    WhatsApp contact metadata, refreshed by contact listing and sync.
    """

    __tablename__ = "whatsapp_contacts"
    __table_args__ = (
        UniqueConstraint("user_id", "contact_id", name="uq_contact_user_contact"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pushname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_my_contact: Mapped[bool] = mapped_column(Boolean, default=False)

    def __repr__(self) -> str:
        return f"<WhatsAppContact(contact_id='{self.contact_id}', name='{self.name}')>"
