"""Tests for the session and sync state machines."""

from app.core.messaging.models import SessionRecord
from app.core.messaging.state import (
    SessionStatus,
    SyncStatus,
    can_sync_transition,
    can_transition,
    get_valid_transitions,
    holds_handle,
    is_pairing_state,
    is_sync_running,
    is_terminal_state,
)


class TestSessionTransitions:
    """Test the connection state table."""

    def test_pairing_path(self):
        assert can_transition(SessionStatus.NO_CLIENT, SessionStatus.CONNECTING)
        assert can_transition(SessionStatus.CONNECTING, SessionStatus.QR_READY)
        assert can_transition(SessionStatus.QR_READY, SessionStatus.QR_READY)
        assert can_transition(SessionStatus.QR_READY, SessionStatus.CONNECTING)
        assert can_transition(SessionStatus.CONNECTING, SessionStatus.CONNECTED)

    def test_restored_session_skips_qr(self):
        assert can_transition(SessionStatus.CONNECTING, SessionStatus.CONNECTED)

    def test_connected_only_disconnects(self):
        assert get_valid_transitions(SessionStatus.CONNECTED) == {SessionStatus.DISCONNECTED}
        assert not can_transition(SessionStatus.CONNECTED, SessionStatus.QR_READY)
        assert not can_transition(SessionStatus.CONNECTED, SessionStatus.ERROR)

    def test_terminal_states(self):
        for state in (SessionStatus.DISCONNECTED, SessionStatus.ERROR):
            assert is_terminal_state(state)
            assert get_valid_transitions(state) == set()

    def test_no_client_cannot_connect_directly(self):
        assert not can_transition(SessionStatus.NO_CLIENT, SessionStatus.CONNECTED)
        assert not can_transition(SessionStatus.NO_CLIENT, SessionStatus.QR_READY)

    def test_handle_states(self):
        assert holds_handle(SessionStatus.CONNECTING)
        assert holds_handle(SessionStatus.QR_READY)
        assert holds_handle(SessionStatus.CONNECTED)
        assert not holds_handle(SessionStatus.NO_CLIENT)
        assert not holds_handle(SessionStatus.ERROR)

    def test_pairing_states(self):
        assert is_pairing_state(SessionStatus.CONNECTING)
        assert is_pairing_state(SessionStatus.QR_READY)
        assert not is_pairing_state(SessionStatus.CONNECTED)


class TestSyncTransitions:
    """Test the sync state table."""

    def test_sync_path(self):
        assert can_sync_transition(SyncStatus.IDLE, SyncStatus.PENDING)
        assert can_sync_transition(SyncStatus.PENDING, SyncStatus.SYNCING)
        assert can_sync_transition(SyncStatus.SYNCING, SyncStatus.COMPLETED)
        assert can_sync_transition(SyncStatus.SYNCING, SyncStatus.ERROR)

    def test_resync_allowed_after_finish(self):
        assert can_sync_transition(SyncStatus.COMPLETED, SyncStatus.PENDING)
        assert can_sync_transition(SyncStatus.ERROR, SyncStatus.PENDING)

    def test_no_restart_while_running(self):
        assert not can_sync_transition(SyncStatus.SYNCING, SyncStatus.PENDING)
        assert is_sync_running(SyncStatus.PENDING)
        assert is_sync_running(SyncStatus.SYNCING)
        assert not is_sync_running(SyncStatus.COMPLETED)


class TestSessionRecord:
    """Test record-level invariants."""

    def test_pairing_code_cleared_when_leaving_qr(self):
        record = SessionRecord(tenant_id="user-1")
        record.transition(SessionStatus.CONNECTING)
        assert record.set_pairing_code("code-1")
        assert record.pairing_code == "code-1"

        record.transition(SessionStatus.CONNECTING)
        assert record.pairing_code is None

    def test_connected_sets_phone_and_clears_code(self):
        record = SessionRecord(tenant_id="user-1")
        record.transition(SessionStatus.CONNECTING)
        record.set_pairing_code("code-1")

        assert record.mark_connected("5511999998888")
        assert record.phone_number == "5511999998888"
        assert record.pairing_code is None
        assert record.connected_at is not None

    def test_connected_requires_phone(self):
        record = SessionRecord(tenant_id="user-1")
        record.transition(SessionStatus.CONNECTING)

        assert not record.mark_connected(None)
        assert not record.mark_connected("")
        assert record.status == SessionStatus.CONNECTING
        assert record.phone_number is None

    def test_invalid_transition_is_rejected(self):
        record = SessionRecord(tenant_id="user-1")
        assert not record.transition(SessionStatus.CONNECTED)
        assert record.status == SessionStatus.NO_CLIENT

    def test_code_rejected_once_connected(self):
        record = SessionRecord(tenant_id="user-1")
        record.transition(SessionStatus.CONNECTING)
        record.mark_connected("5511999998888")

        assert not record.set_pairing_code("late-code")
        assert record.pairing_code is None
        assert record.status == SessionStatus.CONNECTED

    def test_snapshot_has_no_handle(self):
        record = SessionRecord(tenant_id="user-1", company_id="co-1")
        snapshot = record.snapshot()

        assert snapshot["tenant_id"] == "user-1"
        assert snapshot["status"] == "no_client"
        assert snapshot["sync_status"] == "idle"
        assert "live_handle" not in snapshot
