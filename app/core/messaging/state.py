"""Session and sync state machines."""

from enum import Enum
from typing import Set


class SessionStatus(str, Enum):
    """Connection states of a tenant's messaging session."""

    NO_CLIENT = "no_client"

    # Pairing
    CONNECTING = "connecting"
    QR_READY = "qr_ready"

    CONNECTED = "connected"

    # Terminal states
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SyncStatus(str, Enum):
    """Progress of the post-connect history ingestion."""

    IDLE = "idle"
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.NO_CLIENT: {
        SessionStatus.CONNECTING,
    },
    SessionStatus.CONNECTING: {
        SessionStatus.QR_READY,
        SessionStatus.CONNECTED,
        SessionStatus.ERROR,
        SessionStatus.DISCONNECTED,
    },
    SessionStatus.QR_READY: {
        SessionStatus.QR_READY,  # Pairing code rotated
        SessionStatus.CONNECTING,  # Scanned, waiting for the client to load
        SessionStatus.CONNECTED,
        SessionStatus.ERROR,
        SessionStatus.DISCONNECTED,
    },
    SessionStatus.CONNECTED: {
        SessionStatus.DISCONNECTED,
    },
    SessionStatus.DISCONNECTED: set(),  # Terminal state
    SessionStatus.ERROR: set(),  # Terminal state
}

SYNC_TRANSITIONS: dict[SyncStatus, Set[SyncStatus]] = {
    SyncStatus.IDLE: {SyncStatus.PENDING},
    SyncStatus.PENDING: {SyncStatus.SYNCING, SyncStatus.ERROR},
    SyncStatus.SYNCING: {SyncStatus.COMPLETED, SyncStatus.ERROR},
    SyncStatus.COMPLETED: {SyncStatus.PENDING},  # Manual re-sync
    SyncStatus.ERROR: {SyncStatus.PENDING},  # Manual re-sync
}


def can_transition(from_state: SessionStatus, to_state: SessionStatus) -> bool:
    """Check if a session state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def can_sync_transition(from_state: SyncStatus, to_state: SyncStatus) -> bool:
    """Check if a sync state transition is valid."""
    return to_state in SYNC_TRANSITIONS.get(from_state, set())


def get_valid_transitions(state: SessionStatus) -> Set[SessionStatus]:
    """Get all valid transitions from a state."""
    return VALID_TRANSITIONS.get(state, set())


def is_terminal_state(state: SessionStatus) -> bool:
    """Check if state is terminal (a new initialize creates a fresh record)."""
    return state in {
        SessionStatus.DISCONNECTED,
        SessionStatus.ERROR,
    }


def is_pairing_state(state: SessionStatus) -> bool:
    """Check if state is part of the pairing flow."""
    return state in {
        SessionStatus.CONNECTING,
        SessionStatus.QR_READY,
    }


def holds_handle(state: SessionStatus) -> bool:
    """Check if a record in this state owns a live handle."""
    return state in {
        SessionStatus.CONNECTING,
        SessionStatus.QR_READY,
        SessionStatus.CONNECTED,
    }


def is_sync_running(state: SyncStatus) -> bool:
    """Check if a sync pass is queued or in flight."""
    return state in {
        SyncStatus.PENDING,
        SyncStatus.SYNCING,
    }
