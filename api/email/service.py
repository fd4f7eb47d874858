"""
Inbox service: wires provider adapters, the room registry and sync.

One instance is built at startup and injected where needed; nothing in the
engine is a module-level singleton.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .providers.base import EmailFilter, EmailMessage, EmailProvider, ProviderType
from .rooms import ProviderRecord, Room, RoomRegistry
from .sync import AutoSyncScheduler, SyncOrchestrator, SyncStatus, _utcnow

logger = logging.getLogger(__name__)


class InboxService:
    """Facade over the providers, rooms and sync components."""

    def __init__(
        self,
        providers: List[EmailProvider],
        parser,
        calendar=None,
        crm=None,
        registry: Optional[RoomRegistry] = None,
        tick_minutes: float = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the service.

        Args:
            providers: One adapter per provider kind
            parser: AI parser collaborator
            calendar: Calendar collaborator (optional)
            crm: CRM collaborator (optional)
            registry: Room registry; a fresh one when omitted
            tick_minutes: Auto-sync tick interval
            clock: Current time source
        """
        self.providers: Dict[str, EmailProvider] = {p.provider_id: p for p in providers}
        self.records: Dict[str, ProviderRecord] = {}
        for provider in providers:
            record = ProviderRecord.for_type(provider.provider_type)
            record.is_demo = provider.is_demo
            self.records[provider.provider_id] = record

        self.calendar = calendar
        self.crm = crm
        self.registry = registry or RoomRegistry()
        self.orchestrator = SyncOrchestrator(
            self.registry, self.get_provider, parser, calendar=calendar, crm=crm, clock=clock
        )
        self.scheduler = AutoSyncScheduler(self.registry, self.orchestrator, tick_minutes, clock=clock)

    def get_provider(self, provider_id: str) -> EmailProvider:
        """
        Raises:
            ValueError: unsupported provider id
        """
        provider = self.providers.get(ProviderType(provider_id).value)
        if provider is None:
            raise ValueError(f"Provider not available: {provider_id}")
        return provider

    def _refresh_record(self, provider_id: str) -> ProviderRecord:
        record = self.records[provider_id]
        connected = self.providers[provider_id].is_connected
        record.connection_state = 'connected' if connected else 'disconnected'
        return record

    def get_providers(self) -> List[ProviderRecord]:
        """Provider records with connection state read from the sessions."""
        return [self._refresh_record(pid) for pid in self.providers]

    async def connect_provider(self, provider_id: str) -> Tuple[ProviderRecord, Room]:
        """
        Sign in to a provider and create or reactivate its room.

        Authentication failures propagate as typed errors.
        """
        provider = self.get_provider(provider_id)
        logger.info(f"Connecting {provider.provider_id}")

        user_info = await provider.connect()

        # One account per provider kind; rooms of a previous account stop syncing
        self.registry.deactivate_rooms_for_provider(provider.provider_id, keep_email=user_info.email)
        room = self.registry.upsert_room(provider.provider_type, user_info)
        provider.bind_room(room.id)

        try:
            unread = await provider.get_unread_count()
            room = self.registry.set_unread_count(room.id, unread)
        except Exception as e:
            logger.warning(f"Could not read unread count for {room.id}: {e}")

        record = self._refresh_record(provider.provider_id)
        record.account_info = user_info
        logger.info(f"Connected {provider.provider_id} as {user_info.email}")
        return record, room

    async def disconnect_provider(self, provider_id: str) -> ProviderRecord:
        """Revoke, deactivate the provider's rooms and clear account info."""
        provider = self.get_provider(provider_id)
        try:
            await provider.disconnect()
        except Exception as e:
            logger.error(f"Error revoking {provider.provider_id} session: {e}")

        self.registry.deactivate_rooms_for_provider(provider.provider_id)
        record = self._refresh_record(provider.provider_id)
        record.account_info = None
        logger.info(f"Disconnected {provider.provider_id}")
        return record

    def get_rooms(self, active_only: bool = True) -> List[Room]:
        if active_only:
            return self.registry.list_active_rooms()
        return self.registry.list_rooms()

    def _provider_for_room(self, room_id: str) -> EmailProvider:
        room = self.registry.get_room(room_id)
        provider = self.get_provider(room.provider_id)
        provider.bind_room(room.id)
        return provider

    async def get_messages(
        self,
        room_id: str,
        filter: Optional[EmailFilter] = None,
        max_results: int = 50,
    ) -> List[EmailMessage]:
        provider = self._provider_for_room(room_id)
        return await provider.list_messages(filter, max_results)

    async def mark_as_read(self, room_id: str, message_id: str) -> bool:
        provider = self._provider_for_room(room_id)
        return await provider.mark_as_read(message_id)

    async def set_starred(self, room_id: str, message_id: str, starred: bool = True) -> bool:
        provider = self._provider_for_room(room_id)
        return await provider.set_starred(message_id, starred)

    def update_room_settings(self, room_id: str, **changes: Any) -> Room:
        return self.registry.update_settings(room_id, **changes)

    async def sync_room(self, room_id: str) -> SyncStatus:
        """
        On-demand sync for a room.

        Raises:
            SyncInProgress: a pass for the room is already running
            RoomNotFound: unknown room id
        """
        return await self.scheduler.request_sync(room_id)

    def get_sync_status(self, room_id: str) -> Optional[SyncStatus]:
        self.registry.get_room(room_id)
        return self.orchestrator.get_status(room_id)

    async def start_auto_sync(self) -> None:
        await self.scheduler.start()

    async def stop_auto_sync(self) -> None:
        await self.scheduler.stop()
