"""
Abstract base class for email providers.
Defines the canonical message model and the interface that all email
providers must implement.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..credentials import CredentialSession
from ..errors import AdapterNotReady, NotConnected

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Supported email provider types."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"


@dataclass
class EmailAddress:
    """A mailbox as name + address; name falls back to the address."""
    name: str
    email: str

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'email': self.email}


@dataclass
class EmailBody:
    text: str
    html: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'html': self.html}


@dataclass
class UserInfo:
    """Identity of the signed-in mailbox."""
    email: str
    name: str
    avatar: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'email': self.email, 'name': self.name, 'avatar': self.avatar}


@dataclass
class EmailMessage:
    """Standardized email message structure across all providers."""
    id: str
    thread_id: Optional[str]
    subject: str
    sender: EmailAddress
    date: datetime
    body: EmailBody

    to: List[EmailAddress] = field(default_factory=list)
    cc: List[EmailAddress] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    has_attachments: bool = False
    snippet: str = ""
    provider_id: str = ""
    room_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'thread_id': self.thread_id,
            'subject': self.subject,
            'from': self.sender.to_dict(),
            'to': [a.to_dict() for a in self.to],
            'cc': [a.to_dict() for a in self.cc],
            'date': self.date.isoformat() if self.date else None,
            'body': self.body.to_dict(),
            'labels': list(self.labels),
            'is_read': self.is_read,
            'is_starred': self.is_starred,
            'is_important': self.is_important,
            'has_attachments': self.has_attachments,
            'snippet': self.snippet,
            'provider_id': self.provider_id,
            'room_id': self.room_id,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class EmailFilter:
    """
    Message list filter. Unset (None) fields impose no constraint.

    date_from / date_to form the date range; either end may be open.
    """
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None
    is_important: Optional[bool] = None
    has_attachments: Optional[bool] = None
    sender: Optional[str] = None
    subject: Optional[str] = None
    query: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    def matches(self, message: EmailMessage, include_query: bool = True) -> bool:
        """True when the message satisfies every set field."""
        if self.is_read is not None and message.is_read != self.is_read:
            return False
        if self.is_starred is not None and message.is_starred != self.is_starred:
            return False
        if self.is_important is not None and message.is_important != self.is_important:
            return False
        if self.has_attachments is not None and message.has_attachments != self.has_attachments:
            return False

        if self.sender:
            needle = self.sender.lower()
            if needle not in message.sender.email.lower() and needle not in message.sender.name.lower():
                return False

        if self.subject and self.subject.lower() not in (message.subject or "").lower():
            return False

        if self.date_from is not None or self.date_to is not None:
            if message.date is None:
                return False
            when = _as_utc(message.date)
            if self.date_from is not None and when < _as_utc(self.date_from):
                return False
            if self.date_to is not None and when > _as_utc(self.date_to):
                return False

        if include_query and self.query:
            needle = self.query.lower()
            haystack = " ".join([
                message.subject or "",
                message.snippet or "",
                message.body.text or "",
                message.sender.email,
                message.sender.name,
            ]).lower()
            if needle not in haystack:
                return False

        return True


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    All providers (Gmail, Outlook, demo fixtures) expose the same capability
    set. Subclasses implement _fetch_messages; list_messages applies the
    structured filter fields to the normalized result.
    """

    # Providers needing one call per message only expand this many
    DETAIL_FETCH_LIMIT = 10
    READY_ATTEMPTS = 3
    READY_TIMEOUT = 10.0
    READY_BACKOFF = 1.0

    def __init__(self, session: Optional[CredentialSession] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the email provider.

        Args:
            session: Credential session owning this provider's token
            config: Provider-specific configuration dictionary
        """
        self.session = session
        self.config = config or {}
        self.room_id: Optional[str] = None
        self._ready = False

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @property
    def provider_id(self) -> str:
        return self.provider_type.value

    @property
    def is_demo(self) -> bool:
        return False

    @property
    def is_configured(self) -> bool:
        return self.session is not None and self.session.is_configured

    @property
    def is_connected(self) -> bool:
        """Connected iff the credential session holds a non-expired token."""
        return self.session is not None and self.session.signed_in

    def bind_room(self, room_id: str) -> None:
        """Tag subsequently fetched messages with this room id."""
        self.room_id = room_id

    def _initialize_client(self) -> None:
        """Build provider client objects. Blocking; runs in the executor."""
        if self.session is not None:
            self.session.token_source.prepare()

    async def initialize(self) -> None:
        """
        Readiness step: build client objects with bounded retries.

        Raises:
            AdapterNotReady: all attempts failed or timed out
        """
        if self._ready:
            return

        loop = asyncio.get_running_loop()
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.READY_ATTEMPTS + 1):
            try:
                await asyncio.wait_for(
                    loop.run_in_executor(None, self._initialize_client),
                    timeout=self.READY_TIMEOUT,
                )
                self._ready = True
                logger.info(f"{self.provider_id} client initialized")
                return
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"{self.provider_id} client init attempt {attempt} timed out")
            except Exception as e:
                last_error = e
                logger.warning(f"{self.provider_id} client init attempt {attempt} failed: {e}")

            if attempt < self.READY_ATTEMPTS:
                await asyncio.sleep(self.READY_BACKOFF * (2 ** (attempt - 1)))

        raise AdapterNotReady(
            f"Failed to initialize {self.provider_id} client after "
            f"{self.READY_ATTEMPTS} attempts: {last_error}",
            self.provider_id,
        )

    async def connect(self) -> UserInfo:
        """Sign in (restore, silent, then interactive) and return the account."""
        if self.session is None:
            raise NotConnected(f"{self.provider_id} has no credential session", self.provider_id)
        await self.initialize()
        await self.session.sign_in()
        return await self.get_user_info()

    async def disconnect(self) -> None:
        """Revoke the session. Best-effort; local state is always cleared."""
        if self.session is not None:
            await self.session.revoke()

    async def _access_token(self) -> str:
        if self.session is None:
            raise NotConnected(f"{self.provider_id} not connected", self.provider_id)
        if not self._ready:
            await self.initialize()
        return await self.session.get_access_token()

    @abstractmethod
    async def get_user_info(self) -> UserInfo:
        """
        Get the signed-in account.

        Raises:
            NotConnected: no valid session
        """
        pass

    async def list_messages(
        self,
        filter: Optional[EmailFilter] = None,
        max_results: int = 50
    ) -> List[EmailMessage]:
        """
        List messages matching the filter in provider order.

        Only the first DETAIL_FETCH_LIMIT results may be expanded, so callers
        must not treat the result as a full mailbox scan.
        """
        filter = filter or EmailFilter()
        messages = await self._fetch_messages(filter, max_results)
        return [m for m in messages if filter.matches(m, include_query=False)]

    @abstractmethod
    async def _fetch_messages(self, filter: EmailFilter, max_results: int) -> List[EmailMessage]:
        pass

    @abstractmethod
    async def mark_as_read(self, message_id: str) -> bool:
        """
        Mark an email as read. Marking a read message again succeeds.

        Returns:
            True if successful, False otherwise
        """
        pass

    @abstractmethod
    async def set_starred(self, message_id: str, starred: bool = True) -> bool:
        """Star or unstar a message. Idempotent."""
        pass

    @abstractmethod
    async def get_unread_count(self) -> int:
        """Best-effort unread estimate; 0 when unavailable."""
        pass
