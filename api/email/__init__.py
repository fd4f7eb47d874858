"""
Email integration engine: per-mailbox rooms synchronized from Gmail and
Outlook, with AI meeting detection on incoming mail.
"""

from .errors import EmailIntegrationError
from .providers.base import EmailFilter, EmailMessage, EmailProvider, ProviderType
from .rooms import Room, RoomRegistry, RoomSettings
from .service import InboxService
from .sync import AutoSyncScheduler, SyncOrchestrator, SyncStatus

__all__ = [
    'EmailIntegrationError',
    'EmailFilter',
    'EmailMessage',
    'EmailProvider',
    'ProviderType',
    'Room',
    'RoomRegistry',
    'RoomSettings',
    'InboxService',
    'AutoSyncScheduler',
    'SyncOrchestrator',
    'SyncStatus',
]
