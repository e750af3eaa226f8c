"""
Multi-tenant WhatsApp session core.

One live browser-driven client per tenant, with pairing and sync state
machines, timeout-bounded actions and idle eviction.
"""

from .client import ClientEvent, ClientEventType, MessagingClient
from .errors import (
    ActionTimeout,
    AlreadyConnected,
    AutomationError,
    MessageNotEditable,
    MessageNotFound,
    MessagingError,
    NeedsReconnect,
    NotConnected,
    PairingFailed,
    SyncFailed,
)
from .models import PairingResult, SessionRecord, SyncProgress
from .registry import SessionRegistry
from .service import MessagingService, get_messaging_service, set_messaging_service
from .state import SessionStatus, SyncStatus

__all__ = [
    # Automation layer
    "ClientEvent",
    "ClientEventType",
    "MessagingClient",
    # Errors
    "MessagingError",
    "NotConnected",
    "ActionTimeout",
    "PairingFailed",
    "AlreadyConnected",
    "NeedsReconnect",
    "SyncFailed",
    "MessageNotFound",
    "MessageNotEditable",
    "AutomationError",
    # Models
    "PairingResult",
    "SessionRecord",
    "SyncProgress",
    "SessionStatus",
    "SyncStatus",
    # Service
    "SessionRegistry",
    "MessagingService",
    "get_messaging_service",
    "set_messaging_service",
]
