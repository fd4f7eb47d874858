"""
In-memory CRM collaborator.

Keeps a contact book keyed by email address plus an activity log, and a
list of CRM providers that can be marked connected. Contacts are only
synced while at least one provider is connected.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .models import CRMContact, CRMSyncRequest, CRMSyncResponse

logger = logging.getLogger(__name__)


class CRMNotConnected(Exception):
    """No CRM provider is connected."""


@dataclass
class CRMProvider:
    id: str
    name: str
    icon: str
    connected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'icon': self.icon, 'connected': self.connected}


@dataclass
class CRMActivity:
    id: str
    contact_id: str
    type: str
    subject: str
    description: str
    date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'contact_id': self.contact_id,
            'type': self.type,
            'subject': self.subject,
            'description': self.description,
            'date': self.date.isoformat(),
        }


def _default_providers() -> List[CRMProvider]:
    return [
        CRMProvider('hubspot', 'HubSpot', '🔶'),
        CRMProvider('salesforce', 'Salesforce', '☁️'),
        CRMProvider('pipedrive', 'Pipedrive', '📊'),
        CRMProvider('googlesheets', 'Google Sheets', '📋'),
        CRMProvider('airtable', 'Airtable', '🗃️'),
    ]


def _email_subject(content: str) -> str:
    first_line = content.strip().split('\n')[0].strip() if content else ''
    if len(first_line) > 50:
        return first_line[:47] + '...'
    return first_line or 'Email Communication'


class InMemoryCRM:
    """Contact book with upsert-by-email semantics."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.clock = clock
        self.providers = _default_providers()
        self._contacts: Dict[str, CRMContact] = {}
        self._activities: List[CRMActivity] = []

    def get_providers(self) -> List[CRMProvider]:
        return list(self.providers)

    def _find_provider(self, provider_id: str) -> Optional[CRMProvider]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def connect_provider(self, provider_id: str) -> bool:
        provider = self._find_provider(provider_id)
        if provider is None:
            return False
        provider.connected = True
        logger.info(f"Connected CRM provider {provider.name}")
        return True

    def disconnect_provider(self, provider_id: str) -> bool:
        provider = self._find_provider(provider_id)
        if provider is None:
            return False
        provider.connected = False
        return True

    def has_connected_provider(self) -> bool:
        return any(p.connected for p in self.providers)

    def find_contact(self, email: str) -> Optional[CRMContact]:
        return self._contacts.get((email or '').lower())

    def get_contacts(self) -> List[CRMContact]:
        return list(self._contacts.values())

    def get_contact_history(self, contact_id: str) -> List[CRMActivity]:
        return sorted(
            (a for a in self._activities if a.contact_id == contact_id),
            key=lambda a: a.date,
            reverse=True,
        )

    async def sync_contact(self, request: CRMSyncRequest) -> CRMSyncResponse:
        """
        Create or update the contact keyed by its email address.

        Raises:
            CRMNotConnected: no provider is connected
        """
        if not self.has_connected_provider():
            raise CRMNotConnected('No CRM provider connected')

        incoming = request.contact
        key = (incoming.email or '').lower()
        now = self.clock()
        existing = self._contacts.get(key) if key else None

        if existing is not None:
            existing.name = incoming.name or existing.name
            existing.company = incoming.company or existing.company
            existing.updated_at = now
            contact = existing
            action = 'updated'
        else:
            contact = CRMContact(
                id=uuid.uuid4().hex,
                name=incoming.name or 'Unknown',
                email=incoming.email or '',
                company=incoming.company or 'Unknown Company',
                source=incoming.source,
                created_at=now,
                updated_at=now,
            )
            self._contacts[key or contact.id] = contact
            action = 'created'

        if request.email_content:
            content = request.email_content
            self._activities.append(CRMActivity(
                id=uuid.uuid4().hex,
                contact_id=contact.id,
                type='email',
                subject=_email_subject(content),
                description=content[:500] + ('...' if len(content) > 500 else ''),
                date=now,
            ))

        connected = ", ".join(p.name for p in self.providers if p.connected)
        logger.info(f"CRM contact {contact.email or contact.id} {action} ({connected})")
        return CRMSyncResponse(success=True, action=action, contact=contact)
