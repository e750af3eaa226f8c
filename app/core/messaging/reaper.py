"""
Heartbeat tracking and idle session eviction.

Clients poll status or send heartbeats while their UI is open; a session
nobody has looked at for longer than its TTL is released so its browser
does not run forever.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from .models import SessionRecord
from .registry import SessionRegistry
from .state import SessionStatus, is_pairing_state
from .store import ConnectionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionReaper:
    """Periodic sweep over the registry."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: ConnectionStore,
        pairing_ttl: Optional[float] = None,
        connected_ttl: Optional[float] = None,
        interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.pairing_ttl = pairing_ttl if pairing_ttl is not None else settings.pairing_ttl_seconds
        self.connected_ttl = connected_ttl if connected_ttl is not None else settings.connected_ttl_seconds
        self.interval = interval if interval is not None else settings.reaper_interval_seconds
        self._task: Optional[asyncio.Task] = None

    def touch(self, tenant_id: str) -> bool:
        """
        Record a heartbeat.

        Returns:
            False if the tenant has no live record
        """
        record = self.registry.get(tenant_id)
        if record is None or not record.is_live:
            return False
        record.touch()
        return True

    def _ttl_for(self, record: SessionRecord) -> float:
        if is_pairing_state(record.status):
            return self.pairing_ttl
        return self.connected_ttl

    def is_expired(self, record: SessionRecord, now: Optional[datetime] = None) -> bool:
        return record.idle_seconds(now) > self._ttl_for(record)

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Evict every record idle past its TTL.

        Returns:
            Tenant ids evicted in this pass
        """
        now = now or _utcnow()
        evicted = []

        for record in self.registry.all_records():
            if not self.is_expired(record, now):
                continue

            idle = record.idle_seconds(now)
            logger.info(
                f"Evicting idle session for tenant {record.tenant_id} "
                f"({record.status.value}, idle {idle:.0f}s)"
            )
            was_connected = record.status == SessionStatus.CONNECTED

            removed = await self.registry.remove(
                record.tenant_id,
                SessionStatus.DISCONNECTED,
                reason="Idle timeout",
                record=record,
            )
            if removed is None:
                continue
            evicted.append(record.tenant_id)

            if was_connected:
                try:
                    await self.store.mark_stale(record.tenant_id)
                except SQLAlchemyError as e:
                    logger.error(f"Failed to mark connection stale for tenant {record.tenant_id}: {e}")

        if evicted:
            logger.info(f"Reaper evicted {len(evicted)} session(s)")
        return evicted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Reaper sweep failed: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="wa-session-reaper")
            logger.info(f"Session reaper started (interval {self.interval:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session reaper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
