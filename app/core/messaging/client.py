"""
Automation layer contract.

A ``MessagingClient`` is the live handle: one browser-driven messaging
client per tenant. The session core only talks to it through this
interface, which keeps the Playwright driver swappable and lets tests
script the pairing flow.

Pairing and inbound traffic are not delivered through callbacks. The
client pushes ``ClientEvent`` objects into the per-tenant inbox handed to
``start()``; the tenant's own task drains that inbox in order.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ClientEventType(str, Enum):
    """Events emitted by the automation layer."""

    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    MESSAGE = "message"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"


@dataclass
class RemoteMessage:
    """A message as seen by the live client."""

    id: str
    chat_id: str
    body: str = ""
    from_me: bool = False
    timestamp: datetime = field(default_factory=_utcnow)
    type: str = "chat"
    has_media: bool = False
    sender: str = ""
    recipient: str = ""
    caption: Optional[str] = None
    filename: Optional[str] = None
    location: Optional[dict] = None
    is_group: bool = False

    # Counterparty details resolved by the client when available
    contact_name: Optional[str] = None
    contact_number: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteMessage":
        """Create from a payload returned by the browser page."""
        ts = data.get("timestamp")
        if isinstance(ts, (int, float)):
            timestamp = datetime.fromtimestamp(ts, tz=timezone.utc)
        elif isinstance(ts, str):
            timestamp = datetime.fromisoformat(ts)
        else:
            timestamp = _utcnow()

        return cls(
            id=data.get("id", ""),
            chat_id=data.get("chatId", data.get("chat_id", "")),
            body=data.get("body") or "",
            from_me=bool(data.get("fromMe", data.get("from_me", False))),
            timestamp=timestamp,
            type=data.get("type", "chat"),
            has_media=bool(data.get("hasMedia", data.get("has_media", False))),
            sender=data.get("from", ""),
            recipient=data.get("to", ""),
            caption=data.get("caption"),
            filename=data.get("filename"),
            location=data.get("location"),
            is_group=bool(data.get("isGroup", False)),
            contact_name=data.get("contactName"),
            contact_number=data.get("contactNumber"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "body": self.body,
            "from_me": self.from_me,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "has_media": self.has_media,
        }


@dataclass
class RemoteChat:
    """A chat listed by the live client."""

    id: str
    name: Optional[str] = None
    is_group: bool = False
    unread_count: int = 0
    contact_name: Optional[str] = None
    contact_number: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteChat":
        """Create from a payload returned by the browser page."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name"),
            is_group=bool(data.get("isGroup", False)),
            unread_count=int(data.get("unreadCount") or 0),
            contact_name=data.get("contactName"),
            contact_number=data.get("contactNumber"),
        )


@dataclass
class RemoteContact:
    """An address-book entry known to the live client."""

    id: str
    phone: str = ""
    name: str = ""
    pushname: str = ""
    is_my_contact: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteContact":
        """Create from a payload returned by the browser page."""
        return cls(
            id=data.get("id", ""),
            phone=data.get("phone", ""),
            name=data.get("name", ""),
            pushname=data.get("pushname", ""),
            is_my_contact=bool(data.get("isMyContact", False)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "phone": self.phone,
            "name": self.name,
            "pushname": self.pushname,
            "is_my_contact": self.is_my_contact,
        }


@dataclass
class ClientEvent:
    """One event delivered into a tenant's inbox."""

    type: ClientEventType
    pairing_code: Optional[str] = None
    phone_number: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[RemoteMessage] = None
    received_at: datetime = field(default_factory=_utcnow)


class MessagingClient(ABC):
    """
    Live handle for one tenant.

    Implementations must be single-owner: the session record that created
    the handle is the only holder, and ``close()`` is called exactly once.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._inbox: Optional[asyncio.Queue] = None

    async def start(self, inbox: asyncio.Queue) -> None:
        """
        Launch the client and begin pairing.

        Returns once the automation resources exist; pairing progress is
        reported through ``inbox``.
        """
        self._inbox = inbox
        await self._launch()

    def _emit(self, event: ClientEvent) -> None:
        """Deliver an event to the owning session's inbox."""
        if self._inbox is not None:
            self._inbox.put_nowait(event)

    @abstractmethod
    async def _launch(self) -> None:
        """Create the automation resources."""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device on the remote side."""

    @abstractmethod
    async def close(self) -> None:
        """Release every automation resource held by this handle."""

    @abstractmethod
    async def send_message(self, chat_id: str, content: str) -> RemoteMessage:
        """Send a text message and return the created message."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[RemoteMessage]:
        """Resolve a message by its remote id."""

    @abstractmethod
    async def edit_message(self, message_id: str, content: str) -> bool:
        """Edit an own message. Returns False if the remote side refused."""

    @abstractmethod
    async def delete_message(self, message_id: str, for_everyone: bool) -> None:
        """Delete for everyone (revoke) or only for the tenant."""

    @abstractmethod
    async def react(self, message_id: str, emoji: str) -> None:
        """React to a message. An empty emoji removes the reaction."""

    @abstractmethod
    async def list_contacts(self) -> list[RemoteContact]:
        """List address-book contacts."""

    @abstractmethod
    async def list_chats(self) -> list[RemoteChat]:
        """List chats, most recent first."""

    @abstractmethod
    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[RemoteMessage]:
        """Fetch the latest messages of a chat, oldest first."""


ClientFactory = Callable[[str], MessagingClient]


def describe_handle(handle: Any) -> str:
    """Short identity string for logs."""
    if handle is None:
        return "none"
    return f"{type(handle).__name__}@{id(handle):x}"
