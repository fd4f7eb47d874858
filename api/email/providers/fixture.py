"""
Demo email provider backed by deterministic in-memory fixtures.
Used when no OAuth client is configured so the whole pipeline can run
without network access.
"""

import logging
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .base import (
    EmailAddress,
    EmailBody,
    EmailFilter,
    EmailMessage,
    EmailProvider,
    ProviderType,
    UserInfo,
)

logger = logging.getLogger(__name__)


def build_fixture_messages(provider_id: str, now: datetime) -> List[EmailMessage]:
    """Three demo messages, the first one unread."""
    return [
        EmailMessage(
            id="mock_1",
            thread_id="thread_1",
            subject="Meeting Request - Q4 Planning",
            sender=EmailAddress(name="John Smith", email="john.smith@acme.com"),
            to=[EmailAddress(name="Demo User", email=f"demo@{provider_id}.com")],
            date=now - timedelta(hours=2),
            body=EmailBody(
                text=(
                    "Hi, I'd like to schedule a meeting to discuss our Q4 planning. "
                    "Are you available next Tuesday at 2 PM? "
                    "Best regards, John Smith, Acme Corp"
                ),
            ),
            labels=["INBOX", "UNREAD"],
            is_read=False,
            is_important=True,
            snippet="Hi, I'd like to schedule a meeting to discuss our Q4 planning...",
            provider_id=provider_id,
        ),
        EmailMessage(
            id="mock_2",
            thread_id="thread_2",
            subject="Follow up on our conversation",
            sender=EmailAddress(name="Sarah Johnson", email="sarah@techstart.io"),
            to=[EmailAddress(name="Demo User", email=f"demo@{provider_id}.com")],
            date=now - timedelta(hours=4),
            body=EmailBody(
                text=(
                    "Thanks for the great conversation yesterday. "
                    "I'll send over the proposal by Friday. "
                    "Sarah Johnson, TechStart"
                ),
            ),
            labels=["INBOX"],
            is_read=True,
            is_starred=True,
            snippet="Thanks for the great conversation yesterday...",
            provider_id=provider_id,
        ),
        EmailMessage(
            id="mock_3",
            thread_id="thread_3",
            subject="Weekly Newsletter",
            sender=EmailAddress(name="Newsletter", email="news@company.com"),
            to=[EmailAddress(name="Demo User", email=f"demo@{provider_id}.com")],
            date=now - timedelta(hours=6),
            body=EmailBody(
                text="Here are this week's top stories and updates from our team.",
                html="<p>Here are this week's top stories and updates from our team.</p>",
            ),
            labels=["INBOX"],
            is_read=True,
            snippet="Here are this week's top stories...",
            provider_id=provider_id,
        ),
    ]


class FixtureProvider(EmailProvider):
    """
    Deterministic demo mailbox.

    Connects without credentials; mutations change the in-memory fixture so the result is
    visible on the next list call.
    """

    def __init__(
        self,
        provider_type: ProviderType,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(session=None, config=config)
        self._provider_type = provider_type
        self._messages = build_fixture_messages(provider_type.value, clock())
        self._connected = False
        self._ready = True

    @property
    def provider_type(self) -> ProviderType:
        return self._provider_type

    @property
    def is_demo(self) -> bool:
        return True

    @property
    def is_configured(self) -> bool:
        return True

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> UserInfo:
        logger.warning(f"{self.provider_id} running in demo mode with fixture data")
        self._connected = True
        return await self.get_user_info()

    async def disconnect(self) -> None:
        self._connected = False

    async def get_user_info(self) -> UserInfo:
        return UserInfo(
            email=f"demo@{self.provider_id}.com",
            name="Demo User",
            avatar="https://ui-avatars.com/api/?name=Demo+User&background=random",
        )

    async def _fetch_messages(self, filter: EmailFilter, max_results: int) -> List[EmailMessage]:
        result = []
        for message in self._messages:
            if not filter.matches(message):
                continue
            copy = deepcopy(message)
            copy.room_id = self.room_id or ""
            result.append(copy)
            if len(result) >= max_results:
                break
        return result

    def _find(self, message_id: str) -> Optional[EmailMessage]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    async def mark_as_read(self, message_id: str) -> bool:
        message = self._find(message_id)
        if message is None:
            return False
        message.is_read = True
        if "UNREAD" in message.labels:
            message.labels.remove("UNREAD")
        return True

    async def set_starred(self, message_id: str, starred: bool = True) -> bool:
        message = self._find(message_id)
        if message is None:
            return False
        message.is_starred = starred
        if starred and "STARRED" not in message.labels:
            message.labels.append("STARRED")
        elif not starred and "STARRED" in message.labels:
            message.labels.remove("STARRED")
        return True

    async def get_unread_count(self) -> int:
        return sum(1 for m in self._messages if not m.is_read)
