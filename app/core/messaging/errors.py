"""
Typed conditions raised by the messaging session core.

Routes never see opaque failures from the registry or the state machine:
every condition carries a stable ``code`` and the HTTP status the API
layer maps it to.
"""

from typing import Optional


class MessagingError(Exception):
    """Base class for session manager conditions."""

    code: str = "messaging_error"
    http_status: int = 500

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id

    def to_dict(self) -> dict:
        """Error body returned by the API."""
        return {"error": self.code, "detail": self.message}


class NotConnected(MessagingError):
    """Action attempted without a connected live handle."""

    code = "not_connected"
    http_status = 409


class ActionTimeout(MessagingError):
    """
    Automation call exceeded its bound.

    The remote outcome is unknown: the operation may or may not have been
    applied. Callers reconcile with a subsequent read instead of retrying.
    """

    code = "timeout"
    http_status = 504

    def __init__(self, action: str, timeout: float, tenant_id: Optional[str] = None):
        super().__init__(
            f"{action} did not complete within {timeout:g}s; outcome unknown",
            tenant_id=tenant_id,
        )
        self.action = action
        self.timeout = timeout


class PairingFailed(MessagingError):
    """Terminal pairing-layer rejection or handle creation failure."""

    code = "pairing_failed"
    http_status = 502


class AlreadyConnected(MessagingError):
    """Redundant initialize while connected. Informational, treated as success."""

    code = "already_connected"
    http_status = 200


class NeedsReconnect(MessagingError):
    """Persisted state claims an active connection but no live handle exists."""

    code = "needs_reconnect"
    http_status = 409


class SyncFailed(MessagingError):
    """Sync pass failed. Never affects the connection status."""

    code = "sync_failed"
    http_status = 500


class MessageNotFound(MessagingError):
    """Remote message could not be resolved by the live client."""

    code = "message_not_found"
    http_status = 404


class MessageNotEditable(MessagingError):
    """Only messages sent by the tenant can be edited."""

    code = "message_not_editable"
    http_status = 403


class AutomationError(MessagingError):
    """Failure reported by the browser automation layer."""

    code = "automation_error"
    http_status = 502
