"""
Pairing state machine.

Drives a tenant from no client to connected. Events from the automation
layer arrive on the record's inbox and are consumed by one task per tenant,
so pairing transitions for a tenant are applied strictly in order.
"""

import asyncio
import base64
import io
import logging
from datetime import datetime, timezone
from typing import Optional

import qrcode
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from .client import ClientEvent, ClientEventType
from .errors import AlreadyConnected, MessagingError, NeedsReconnect
from .ingest import MessageIngestor
from .models import PairingResult, SessionRecord
from .registry import SessionRegistry
from .state import SessionStatus, is_pairing_state
from .store import ConnectionStore
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def render_pairing_qr(code: str) -> str:
    """Render a pairing code as a PNG data URL."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(code)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class PairingCoordinator:
    """Initialize, status, disconnect and the per-tenant event loop."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: ConnectionStore,
        sync: SyncCoordinator,
        ingestor: MessageIngestor,
    ):
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.sync = sync
        self.ingestor = ingestor
        self.initial_wait = settings.pairing_initial_wait_seconds
        self.pairing_timeout = settings.pairing_timeout_seconds
        self.release_grace = settings.release_grace_seconds

    def _result(self, record: SessionRecord, message: Optional[str] = None) -> PairingResult:
        result = PairingResult.from_record(record, message=message)
        if record.pairing_code:
            result.qr_data_url = render_pairing_qr(record.pairing_code)
        return result

    async def _persisted_active(self, tenant_id: str):
        try:
            return await self.store.get_active_connection(tenant_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not read connection row for tenant {tenant_id}: {e}")
            return None

    async def initialize(
        self,
        tenant_id: str,
        company_id: Optional[str],
        force: bool = False,
    ) -> PairingResult:
        """
        Start or resume pairing for a tenant.

        Args:
            tenant_id: Tenant user id
            company_id: Tenant's company
            force: Start fresh pairing even if the store claims an active
                connection without a live handle

        Returns:
            PairingResult with the state reached

        Raises:
            PairingFailed: If the client could not be created
        """
        record = self.registry.get(tenant_id)
        if record is not None and record.is_live:
            record.touch()
            if record.status == SessionStatus.CONNECTED:
                info = AlreadyConnected("WhatsApp already connected", tenant_id)
                return self._result(record, message=info.message)
            return self._result(record)

        active = await self._persisted_active(tenant_id)
        if active is not None:
            if not force:
                info = NeedsReconnect(
                    "Connection record exists but no live session; reconnect to resume",
                    tenant_id,
                )
                return PairingResult(
                    status=PairingResult.NEEDS_RECONNECT,
                    phone_number=active.display_phone_number,
                    message=info.message,
                )
            try:
                await self.store.mark_stale(tenant_id)
            except SQLAlchemyError as e:
                logger.warning(f"Could not mark stale connection for tenant {tenant_id}: {e}")

        record = await self.registry.get_or_create(tenant_id, company_id)

        if record.inbox_task is None:
            record.inbox_task = asyncio.create_task(
                self._run_inbox(record), name=f"wa-inbox-{tenant_id}"
            )
            logger.info(f"Pairing started for tenant {tenant_id}")
            await self._wait_for_progress(record)

        return self._result(record)

    async def _wait_for_progress(self, record: SessionRecord) -> None:
        """Wait briefly for a pairing code or a terminal event."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.initial_wait
        while True:
            record.state_changed.clear()
            if record.status != SessionStatus.CONNECTING:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(record.state_changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    async def status(self, tenant_id: str) -> PairingResult:
        """
        Status poll. Touches the heartbeat of a live session.

        Never reports connected without a live handle.
        """
        record = self.registry.get(tenant_id)
        if record is not None and record.is_live:
            record.touch()
            return self._result(record)

        active = await self._persisted_active(tenant_id)
        if active is not None:
            return PairingResult(
                status=PairingResult.NEEDS_RECONNECT,
                phone_number=active.display_phone_number,
            )

        result = PairingResult(status=SessionStatus.NO_CLIENT.value)
        if record is not None:
            result.last_error = record.last_error
        return result

    async def disconnect(self, tenant_id: str, logout: bool = True) -> bool:
        """
        Log out, release the handle and delete the persisted connection.

        Returns:
            True if a live session or a persisted row existed
        """
        record = self.registry.get(tenant_id)

        if record is not None and logout and record.live_handle is not None:
            try:
                await asyncio.wait_for(record.live_handle.logout(), timeout=self.release_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Logout timed out for tenant {tenant_id}")
            except MessagingError as e:
                logger.warning(f"Logout failed for tenant {tenant_id}: {e}")

        removed = None
        if record is not None:
            removed = await self.registry.remove(
                tenant_id, SessionStatus.DISCONNECTED, reason="Disconnected by user"
            )

        deleted = await self.store.delete_connection(tenant_id)
        logger.info(f"Tenant {tenant_id} disconnected (live={removed is not None}, row={deleted})")
        return removed is not None or deleted

    # =========================================================================
    # Event loop
    # =========================================================================

    async def _run_inbox(self, record: SessionRecord) -> None:
        """Consume the tenant's inbox until the record is no longer live."""
        try:
            while record.is_live:
                timeout = None
                if is_pairing_state(record.status):
                    elapsed = (_utcnow() - record.created_at).total_seconds()
                    timeout = self.pairing_timeout - elapsed
                    if timeout <= 0:
                        logger.warning(f"Pairing timed out for tenant {record.tenant_id}")
                        await self.registry.remove(
                            record.tenant_id,
                            SessionStatus.ERROR,
                            reason="Pairing timed out",
                            record=record,
                        )
                        return

                try:
                    event = await asyncio.wait_for(record.inbox.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.handle_event(record, event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        f"Failed to apply {event.type.value} event for tenant {record.tenant_id}"
                    )
        finally:
            # Nothing else consumes this inbox; a live record left behind
            # would never see its disconnect.
            if record.is_live and self.registry.get(record.tenant_id) is record:
                logger.error(f"Inbox stopped with live session for tenant {record.tenant_id}")
                await self.registry.remove(
                    record.tenant_id,
                    SessionStatus.ERROR,
                    reason="Event loop failed",
                    record=record,
                )
            logger.debug(f"Inbox closed for tenant {record.tenant_id}")

    async def handle_event(self, record: SessionRecord, event: ClientEvent) -> None:
        """Apply one automation event to the record."""
        tenant_id = record.tenant_id

        if event.type == ClientEventType.QR:
            if is_pairing_state(record.status) and event.pairing_code:
                record.set_pairing_code(event.pairing_code)
                logger.info(f"Pairing code issued for tenant {tenant_id}")

        elif event.type == ClientEventType.AUTHENTICATED:
            if record.status == SessionStatus.QR_READY:
                record.transition(SessionStatus.CONNECTING)
                logger.info(f"Pairing code scanned for tenant {tenant_id}")

        elif event.type == ClientEventType.READY:
            await self._on_ready(record, event.phone_number)

        elif event.type == ClientEventType.AUTH_FAILURE:
            logger.error(f"Authentication failed for tenant {tenant_id}: {event.reason}")
            await self.registry.remove(
                tenant_id,
                SessionStatus.ERROR,
                reason=event.reason or "Authentication failed",
                record=record,
            )

        elif event.type == ClientEventType.DISCONNECTED:
            was_connected = record.status == SessionStatus.CONNECTED
            logger.info(f"Client disconnected for tenant {tenant_id}: {event.reason}")
            await self.registry.remove(
                tenant_id,
                SessionStatus.DISCONNECTED,
                reason=event.reason,
                record=record,
            )
            if was_connected:
                try:
                    await self.store.mark_disconnected(tenant_id)
                except SQLAlchemyError as e:
                    logger.error(f"Failed to mark connection disconnected for tenant {tenant_id}: {e}")

        elif event.type == ClientEventType.MESSAGE:
            if record.is_connected and event.message is not None:
                await self.ingestor.ingest(record, event.message)

    async def _on_ready(self, record: SessionRecord, phone_number: Optional[str]) -> None:
        tenant_id = record.tenant_id
        if not phone_number:
            logger.error(f"Tenant {tenant_id} linked but the account number could not be read")
            await self.registry.remove(
                tenant_id,
                SessionStatus.ERROR,
                reason="Linked number unavailable",
                record=record,
            )
            return
        if not record.mark_connected(phone_number):
            return
        record.touch()
        logger.info(f"WhatsApp connected for tenant {tenant_id}: {phone_number}")

        try:
            record.connection_id = await self.store.upsert_active_connection(
                tenant_id, record.company_id, phone_number
            )
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to persist connection for tenant {tenant_id}: {e}")
            record.last_error = "Connection could not be persisted"

        self.sync.start_background(record)
