"""
Session data models for the messaging session manager.

A ``SessionRecord`` is the in-memory truth about one tenant's live client.
The persisted connection row is only a cache of it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .client import MessagingClient
from .state import SessionStatus, SyncStatus, can_transition, holds_handle

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SyncProgress:
    """Counters of the current or last sync pass."""

    chats_total: int = 0
    chats_done: int = 0
    chats_failed: int = 0
    messages_written: int = 0
    contacts_written: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "chats_total": self.chats_total,
            "chats_done": self.chats_done,
            "chats_failed": self.chats_failed,
            "messages_written": self.messages_written,
            "contacts_written": self.contacts_written,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "error": self.error,
        }


@dataclass
class SessionRecord:
    """
    Live session of one tenant.

    Invariants kept by the registry and the pairing flow:
    - ``live_handle`` is set exactly while the status holds a handle
      (connecting, qr_ready, connected)
    - ``pairing_code`` and ``phone_number`` are never both set
    - ``company_id`` never changes after creation
    """

    # Identifiers
    tenant_id: str
    company_id: Optional[str] = None

    # Connection state
    status: SessionStatus = SessionStatus.NO_CLIENT
    pairing_code: Optional[str] = None
    phone_number: Optional[str] = None
    last_error: Optional[str] = None

    # Sync state
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_progress: SyncProgress = field(default_factory=SyncProgress)

    # Liveness
    last_heartbeat_at: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)
    connected_at: Optional[datetime] = None

    # Persisted connection row, set once connected
    connection_id: Optional[uuid.UUID] = None

    # Runtime resources (never serialized)
    live_handle: Optional[MessagingClient] = field(default=None, repr=False)
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    inbox_task: Optional[asyncio.Task] = field(default=None, repr=False)
    sync_task: Optional[asyncio.Task] = field(default=None, repr=False)
    state_changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def transition(self, new_status: SessionStatus) -> bool:
        """
        Move to ``new_status`` if the state machine allows it.

        Returns:
            True if the transition was applied
        """
        if not can_transition(self.status, new_status):
            logger.warning(
                f"Invalid transition for tenant {self.tenant_id}: "
                f"{self.status.value} -> {new_status.value}"
            )
            return False

        self.status = new_status
        if new_status != SessionStatus.QR_READY:
            self.pairing_code = None
        if new_status != SessionStatus.CONNECTED:
            self.phone_number = None
        self.state_changed.set()
        return True

    def set_pairing_code(self, code: str) -> bool:
        """Rotate the pairing code (moves to qr_ready)."""
        if not self.transition(SessionStatus.QR_READY):
            return False
        self.pairing_code = code
        return True

    def mark_connected(self, phone_number: Optional[str]) -> bool:
        """Enter connected with the linked account's number.

        Refused without a number: a connected record always carries one.
        """
        if not phone_number:
            return False
        if not self.transition(SessionStatus.CONNECTED):
            return False
        self.phone_number = phone_number
        self.last_error = None
        self.connected_at = _utcnow()
        return True

    def touch(self, now: Optional[datetime] = None) -> None:
        """Record a heartbeat."""
        self.last_heartbeat_at = now or _utcnow()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _utcnow()) - self.last_heartbeat_at).total_seconds()

    @property
    def is_connected(self) -> bool:
        return self.status == SessionStatus.CONNECTED and self.live_handle is not None

    @property
    def is_live(self) -> bool:
        return holds_handle(self.status)

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe status view. Never exposes the handle."""
        return {
            "tenant_id": self.tenant_id,
            "company_id": self.company_id,
            "status": self.status.value,
            "pairing_code": self.pairing_code,
            "phone_number": self.phone_number,
            "sync_status": self.sync_status.value,
            "sync_progress": self.sync_progress.to_dict(),
            "last_heartbeat_at": self.last_heartbeat_at.isoformat(),
            "connected_at": _iso(self.connected_at),
            "created_at": self.created_at.isoformat(),
            "last_error": self.last_error,
        }


@dataclass
class PairingResult:
    """
    Outcome of an initialize or status call.

    ``status`` is a ``SessionStatus`` value, or ``needs_reconnect`` when the
    store claims an active connection that has no live handle.
    """

    status: str
    pairing_code: Optional[str] = None
    qr_data_url: Optional[str] = None
    phone_number: Optional[str] = None
    sync_status: str = SyncStatus.IDLE.value
    sync_progress: Optional[dict] = None
    last_error: Optional[str] = None
    message: Optional[str] = None

    NEEDS_RECONNECT = "needs_reconnect"

    @property
    def needs_reconnect(self) -> bool:
        return self.status == self.NEEDS_RECONNECT

    @classmethod
    def from_record(cls, record: SessionRecord, message: Optional[str] = None) -> "PairingResult":
        return cls(
            status=record.status.value,
            pairing_code=record.pairing_code,
            phone_number=record.phone_number,
            sync_status=record.sync_status.value,
            sync_progress=record.sync_progress.to_dict(),
            last_error=record.last_error,
            message=message,
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "pairing_code": self.pairing_code,
            "qr_data_url": self.qr_data_url,
            "phone_number": self.phone_number,
            "sync_status": self.sync_status,
            "sync_progress": self.sync_progress,
            "last_error": self.last_error,
            "message": self.message,
            "needs_reconnect": self.needs_reconnect,
        }
