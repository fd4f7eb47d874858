"""
Room registry: one room per connected mailbox.

The registry is the single owner of room state. Callers receive copies and
change rooms only through registry methods.
"""

import logging
from copy import deepcopy
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import RoomNotFound
from .providers.base import ProviderType, UserInfo

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {
    ProviderType.GMAIL: ('Gmail', '📧'),
    ProviderType.OUTLOOK: ('Outlook', '📮'),
}


@dataclass
class RoomSettings:
    auto_sync: bool = True
    sync_interval: int = 5  # minutes
    ai_parsing: bool = True
    meeting_detection: bool = True
    calendar_integration: bool = True
    crm_sync: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


SETTING_KEYS = frozenset(f.name for f in fields(RoomSettings))


@dataclass
class Room:
    """A synchronized mailbox; identity is (provider_type, account_email)."""
    id: str
    name: str
    provider_id: str
    provider_type: ProviderType
    account_email: str
    is_active: bool = True
    unread_count: int = 0
    last_sync_time: Optional[datetime] = None
    settings: RoomSettings = field(default_factory=RoomSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'provider_id': self.provider_id,
            'provider_type': self.provider_type.value,
            'account_email': self.account_email,
            'is_active': self.is_active,
            'unread_count': self.unread_count,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'settings': self.settings.to_dict(),
        }


@dataclass
class ProviderRecord:
    """Connection status of one provider kind."""
    id: str
    name: str
    icon: str
    type: ProviderType
    connection_state: str = 'disconnected'
    account_info: Optional[UserInfo] = None
    is_demo: bool = False

    @classmethod
    def for_type(cls, provider_type: ProviderType) -> "ProviderRecord":
        name, icon = PROVIDER_NAMES[provider_type]
        return cls(id=provider_type.value, name=name, icon=icon, type=provider_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'icon': self.icon,
            'type': self.type.value,
            'connection_state': self.connection_state,
            'account_info': self.account_info.to_dict() if self.account_info else None,
            'is_demo': self.is_demo,
        }


def make_room_id(provider_id: str, email: str) -> str:
    return f"{provider_id}-{email}"


class RoomRegistry:
    """In-memory registry of rooms keyed by room id."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def _get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(f"Room not found: {room_id}")
        return room

    def upsert_room(self, provider_type: ProviderType, user_info: UserInfo) -> Room:
        """
        Create the room for this mailbox, or reactivate and refresh it.

        Reconnecting the same account reuses the room with its settings and
        sync history.
        """
        provider_type = ProviderType(provider_type)
        provider_id = provider_type.value
        room_id = make_room_id(provider_id, user_info.email)
        name = f"{user_info.name or user_info.email} ({provider_id})"

        room = self._rooms.get(room_id)
        if room is None:
            room = Room(
                id=room_id,
                name=name,
                provider_id=provider_id,
                provider_type=provider_type,
                account_email=user_info.email,
            )
            self._rooms[room_id] = room
            logger.info(f"Created room {room_id}")
        else:
            room.name = name
            room.is_active = True
            logger.info(f"Reactivated room {room_id}")

        return deepcopy(room)

    def get_room(self, room_id: str) -> Room:
        return deepcopy(self._get(room_id))

    def list_rooms(self) -> List[Room]:
        return [deepcopy(r) for r in self._rooms.values()]

    def list_active_rooms(self) -> List[Room]:
        return [deepcopy(r) for r in self._rooms.values() if r.is_active]

    def deactivate_rooms_for_provider(self, provider_id: str, keep_email: Optional[str] = None) -> List[str]:
        """
        Mark the provider's rooms inactive; rooms are never deleted.

        Args:
            provider_id: Provider whose rooms are deactivated
            keep_email: Account whose room stays active (the one now signed in)
        """
        deactivated = []
        for room in self._rooms.values():
            if room.provider_id != provider_id or not room.is_active:
                continue
            if keep_email is not None and room.account_email == keep_email:
                continue
            room.is_active = False
            deactivated.append(room.id)
        if deactivated:
            logger.info(f"Deactivated rooms for {provider_id}: {', '.join(deactivated)}")
        return deactivated

    def update_settings(self, room_id: str, **changes: Any) -> Room:
        """
        Apply a partial settings update.

        Raises:
            RoomNotFound: unknown room
            ValueError: unknown setting name or invalid interval
        """
        room = self._get(room_id)

        unknown = set(changes) - SETTING_KEYS
        if unknown:
            raise ValueError(f"Unknown room settings: {', '.join(sorted(unknown))}")

        if 'sync_interval' in changes:
            interval = int(changes['sync_interval'])
            if interval < 1:
                raise ValueError("sync_interval must be at least 1 minute")
            changes['sync_interval'] = interval

        for key, value in changes.items():
            if key != 'sync_interval':
                value = bool(value)
            setattr(room.settings, key, value)

        return deepcopy(room)

    def record_sync(self, room_id: str, last_sync_time: datetime, unread_count: int) -> Room:
        room = self._get(room_id)
        room.last_sync_time = last_sync_time
        room.unread_count = unread_count
        return deepcopy(room)

    def set_unread_count(self, room_id: str, unread_count: int) -> Room:
        room = self._get(room_id)
        room.unread_count = unread_count
        return deepcopy(room)
