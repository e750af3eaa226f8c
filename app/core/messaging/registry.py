"""
Session Registry

Process-wide map of tenant id to live ``SessionRecord``. The registry is the
only owner of live handles: it creates them through the injected client
factory and is the only place that releases them.

Locking:
- one ``asyncio.Lock`` serializes map mutation; reads are lock-free
- a per-tenant initialization lock serializes handle creation, so two
  concurrent initialize calls for the same tenant never launch two clients
"""

import asyncio
import logging
from typing import Optional

from app.config import get_settings
from .client import ClientFactory, describe_handle
from .errors import MessagingError, PairingFailed
from .models import SessionRecord
from .state import SessionStatus, is_terminal_state

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns every live messaging handle in the process."""

    def __init__(
        self,
        client_factory: ClientFactory,
        release_grace_seconds: Optional[float] = None,
    ):
        if release_grace_seconds is None:
            release_grace_seconds = get_settings().release_grace_seconds
        self._client_factory = client_factory
        self._release_grace = release_grace_seconds
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._init_locks: dict[str, asyncio.Lock] = {}

    def get(self, tenant_id: str) -> Optional[SessionRecord]:
        """Current record for a tenant, if any."""
        return self._records.get(tenant_id)

    def _init_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._init_locks.get(tenant_id)
        if lock is None:
            lock = self._init_locks[tenant_id] = asyncio.Lock()
        return lock

    async def get_or_create(self, tenant_id: str, company_id: Optional[str]) -> SessionRecord:
        """
        Return the tenant's live record, creating and starting a client if needed.

        The record is inserted only after its handle was created and started;
        a factory or launch failure leaves the map untouched.

        Raises:
            PairingFailed: If the client could not be created
        """
        async with self._init_lock(tenant_id):
            existing = self._records.get(tenant_id)
            if existing is not None and not is_terminal_state(existing.status):
                return existing

            record = SessionRecord(tenant_id=tenant_id, company_id=company_id)

            try:
                handle = self._client_factory(tenant_id)
            except Exception as e:
                logger.error(f"Client factory failed for tenant {tenant_id}: {e}")
                raise PairingFailed(f"Could not create messaging client: {e}", tenant_id) from e

            record.live_handle = handle
            record.transition(SessionStatus.CONNECTING)

            try:
                await handle.start(record.inbox)
            except Exception as e:
                logger.error(f"Client launch failed for tenant {tenant_id}: {e}")
                record.live_handle = None
                record.transition(SessionStatus.ERROR)
                await self._close_handle(tenant_id, handle)
                if isinstance(e, PairingFailed):
                    raise
                raise PairingFailed(f"Could not start messaging client: {e}", tenant_id) from e

            async with self._lock:
                self._records[tenant_id] = record

            logger.info(
                f"Session created for tenant {tenant_id} "
                f"(handle={describe_handle(handle)})"
            )
            return record

    async def remove(
        self,
        tenant_id: str,
        status: SessionStatus = SessionStatus.DISCONNECTED,
        reason: Optional[str] = None,
        record: Optional[SessionRecord] = None,
    ) -> Optional[SessionRecord]:
        """
        Release a tenant's handle, mark the record terminal and drop it.

        Args:
            tenant_id: Tenant to remove
            status: Terminal status to record (disconnected or error)
            reason: Stored as ``last_error``
            record: Only remove if this exact record is still registered

        Returns:
            The removed record, or None if nothing was registered
        """
        current = self._records.get(tenant_id)
        if current is None or (record is not None and current is not record):
            return None

        # Detach and mark terminal in one step so no reader sees a
        # connected record without a handle.
        handle = current.live_handle
        releasing = handle is None and is_terminal_state(current.status)
        current.live_handle = None
        if not is_terminal_state(current.status):
            current.transition(status)
        if reason:
            current.last_error = reason

        # A terminal record still in the map is being released by another
        # caller, which may be one of the record's own tasks.
        if not releasing:
            self._cancel_tasks(current)

        if handle is not None:
            await self._close_handle(tenant_id, handle)

        async with self._lock:
            if self._records.get(tenant_id) is current:
                del self._records[tenant_id]

        logger.info(
            f"Session removed for tenant {tenant_id}: {current.status.value}"
            + (f" ({reason})" if reason else "")
        )
        return current

    def _cancel_tasks(self, record: SessionRecord) -> None:
        me = asyncio.current_task()
        for task in (record.sync_task, record.inbox_task):
            if task is not None and task is not me and not task.done():
                task.cancel()

    async def _close_handle(self, tenant_id: str, handle) -> None:
        """Close a handle within the grace period. Failures are logged only."""
        try:
            await asyncio.wait_for(handle.close(), timeout=self._release_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"Handle release for tenant {tenant_id} exceeded "
                f"{self._release_grace:g}s, abandoned"
            )
        except MessagingError as e:
            logger.error(f"Handle release failed for tenant {tenant_id}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error releasing handle for tenant {tenant_id}: {e}")

    def list_connected(self) -> list[dict]:
        """Live truth table: tenants with a connected handle."""
        return [
            {
                "tenant_id": record.tenant_id,
                "company_id": record.company_id,
                "phone_number": record.phone_number,
                "connected_at": record.connected_at.isoformat() if record.connected_at else None,
                "sync_status": record.sync_status.value,
            }
            for record in list(self._records.values())
            if record.is_connected
        ]

    def all_records(self) -> list[SessionRecord]:
        """Snapshot of every registered record."""
        return list(self._records.values())

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in list(self._records.values()):
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._records)

    async def close_all(self) -> int:
        """
        Release every handle. Called on process shutdown.

        Returns:
            Number of sessions released
        """
        tenants = list(self._records.keys())
        results = await asyncio.gather(
            *(self.remove(t, SessionStatus.DISCONNECTED, "Server shutdown") for t in tenants),
            return_exceptions=True,
        )
        released = 0
        for tenant_id, result in zip(tenants, results):
            if isinstance(result, BaseException):
                logger.error(f"Shutdown release failed for tenant {tenant_id}: {result}")
            elif result is not None:
                released += 1
        self._init_locks.clear()
        logger.info(f"Released {released} session(s) on shutdown")
        return released
