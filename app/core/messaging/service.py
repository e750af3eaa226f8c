"""
Messaging service: wires registry, pairing, sync, relay and reaper together.

Routes talk to one ``MessagingService``; the process-wide instance is
returned by ``get_messaging_service()``.
"""

import logging
from typing import Optional

from .client import ClientFactory, RemoteContact, RemoteMessage
from .content import ContactPhoneResolver
from .ingest import MessageIngestor
from .models import PairingResult, SessionRecord, SyncProgress
from .pairing import PairingCoordinator
from .reaper import SessionReaper
from .registry import SessionRegistry
from .relay import ActionRelay
from .store import ConnectionStore
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)


class MessagingService:
    """Facade over the session core."""

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        store: Optional[ConnectionStore] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        if client_factory is None and registry is None:
            from .playwright_client import create_playwright_client
            client_factory = create_playwright_client

        self.store = store or ConnectionStore()
        self.registry = registry or SessionRegistry(client_factory)
        self.resolver = ContactPhoneResolver()
        self.ingestor = MessageIngestor(self.store, self.resolver)
        self.sync = SyncCoordinator(self.registry, self.store, self.resolver)
        self.pairing = PairingCoordinator(self.registry, self.store, self.sync, self.ingestor)
        self.relay = ActionRelay(self.registry, self.store, self.ingestor)
        self.reaper = SessionReaper(self.registry, self.store)

    # Lifecycle

    def start(self) -> None:
        self.reaper.start()

    async def shutdown(self) -> None:
        await self.reaper.stop()
        await self.registry.close_all()

    # Pairing

    async def initialize(self, tenant_id: str, company_id: Optional[str], force: bool = False) -> PairingResult:
        return await self.pairing.initialize(tenant_id, company_id, force=force)

    async def status(self, tenant_id: str) -> PairingResult:
        return await self.pairing.status(tenant_id)

    def heartbeat(self, tenant_id: str) -> bool:
        return self.reaper.touch(tenant_id)

    async def disconnect(self, tenant_id: str) -> bool:
        return await self.pairing.disconnect(tenant_id)

    def get_record(self, tenant_id: str) -> Optional[SessionRecord]:
        return self.registry.get(tenant_id)

    def list_connected(self) -> list[dict]:
        return self.registry.list_connected()

    # Sync

    async def trigger_sync(self, tenant_id: str) -> SyncProgress:
        return await self.sync.trigger_sync(tenant_id)

    # Actions

    async def send(self, tenant_id: str, target: str, content: str) -> RemoteMessage:
        return await self.relay.send(tenant_id, target, content)

    async def edit_message(self, tenant_id: str, message_id: str, content: str) -> None:
        await self.relay.edit_message(tenant_id, message_id, content)

    async def delete_message(self, tenant_id: str, message_id: str, for_everyone: bool) -> None:
        await self.relay.delete_message(tenant_id, message_id, for_everyone)

    async def react_to_message(self, tenant_id: str, message_id: str, emoji: str) -> None:
        await self.relay.react_to_message(tenant_id, message_id, emoji)

    async def list_contacts(self, tenant_id: str) -> list[RemoteContact]:
        return await self.relay.list_contacts(tenant_id)

    async def fetch_messages(self, tenant_id: str, chat_id: str, limit: int = 50) -> list[RemoteMessage]:
        return await self.relay.fetch_messages(tenant_id, chat_id, limit)


# Singleton instance
_messaging_service: Optional[MessagingService] = None


def get_messaging_service() -> MessagingService:
    """Get or create the messaging service singleton."""
    global _messaging_service
    if _messaging_service is None:
        _messaging_service = MessagingService()
    return _messaging_service


def set_messaging_service(service: Optional[MessagingService]) -> None:
    """Replace the singleton (tests, alternate client factories)."""
    global _messaging_service
    _messaging_service = service
