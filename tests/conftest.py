"""Shared fixtures: fake token sources, clocks and collaborators."""

import threading
from datetime import date, datetime, timezone
from typing import List, Optional

import pytest

from api.email.credentials import AccessToken, CredentialSession, TokenSource
from api.email.providers.base import EmailBody, EmailAddress, EmailMessage, ProviderType, UserInfo
from api.email.rooms import RoomRegistry
from api.email.storage import MemorySessionStore
from meeting_ai.models import Availability, CalendarEvent, CRMSyncResponse, ParsedEmailData, ParseResponse

NOW = 1_700_000_000.0


class FakeClock:
    """Mutable epoch clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenSource(TokenSource):
    """Token source returning canned results and counting calls."""

    def __init__(
        self,
        configured: bool = True,
        silent: Optional[AccessToken] = None,
        interactive: Optional[AccessToken] = None,
        interactive_error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.configured = configured
        self.silent = silent
        self.interactive = interactive
        self.interactive_error = interactive_error
        self.gate = gate
        self.silent_calls = 0
        self.interactive_calls = 0
        self.revoked: List[Optional[AccessToken]] = []
        self.revoke_error: Optional[Exception] = None
        self.prepared = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    def prepare(self) -> None:
        self.prepared += 1

    def acquire_silent(self) -> Optional[AccessToken]:
        self.silent_calls += 1
        return self.silent

    def acquire_interactive(self) -> AccessToken:
        self.interactive_calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.interactive_error is not None:
            raise self.interactive_error
        return self.interactive

    def revoke(self, token: Optional[AccessToken]) -> None:
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


def make_token(expires_in: float = 3600, value: str = "token-1", now: float = NOW) -> AccessToken:
    return AccessToken(access_token=value, expires_at=now + expires_in, scope="mail")


def make_message(message_id: str, body: str = "Hello", is_read: bool = False, **kwargs) -> EmailMessage:
    return EmailMessage(
        id=message_id,
        thread_id=f"thread-{message_id}",
        subject=kwargs.pop("subject", f"Subject {message_id}"),
        sender=kwargs.pop("sender", EmailAddress(name="Alice", email="alice@example.com")),
        date=kwargs.pop("date", datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)),
        body=EmailBody(text=body),
        is_read=is_read,
        **kwargs,
    )


class FakeParser:
    """Parser returning queued responses; an Exception entry is raised."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: List[str] = []

    async def parse_email(self, body_text: str) -> ParseResponse:
        self.calls.append(body_text)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def parsed(intent: str = "schedule_meeting", confidence: float = 0.85, **kwargs) -> ParseResponse:
    data = ParsedEmailData(
        intent=intent,
        contact_name=kwargs.get("contact_name", "John Smith"),
        email=kwargs.get("email", "john.smith@acme.com"),
        company=kwargs.get("company", "Acme Corp"),
        datetime=kwargs.get("datetime", "2024-03-05T14:00"),
        participants=kwargs.get("participants", ["john.smith@acme.com"]),
        confidence=confidence,
        reasoning="test",
    )
    return ParseResponse(success=True, data=data)


class FakeCalendar:
    def __init__(self, suggested: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.suggested = ["10:00", "13:00", "14:00"] if suggested is None else suggested
        self.error = error
        self.availability_calls = []
        self.scheduled = []

    async def check_availability(self, date, participants, preferred_time=None):
        self.availability_calls.append((date, list(participants)))
        if self.error is not None:
            raise self.error
        return Availability(date="2024-03-05", slots=[], suggested_times=list(self.suggested))

    async def schedule_event(self, request):
        self.scheduled.append(request)
        return CalendarEvent(
            id=f"evt-{len(self.scheduled)}",
            title=request.title,
            start=request.start,
            end=request.end,
            attendees=list(request.attendees),
            location=request.location,
            description=request.description,
        )


class FakeCRM:
    def __init__(self, connected: bool = True, error: Optional[Exception] = None):
        self.connected = connected
        self.error = error
        self.requests = []

    def has_connected_provider(self) -> bool:
        return self.connected

    async def sync_contact(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return CRMSyncResponse(success=True, action="created", contact=request.contact)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def token_source():
    return FakeTokenSource(interactive=make_token(value="interactive-token"))


@pytest.fixture
def session(token_source, store, clock):
    return CredentialSession("gmail", token_source, store, clock=clock)


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def user_info():
    return UserInfo(email="demo@gmail.com", name="Demo User", avatar=None)


@pytest.fixture
def fixed_today():
    return lambda: date(2024, 3, 1)


@pytest.fixture
def gmail_type():
    return ProviderType.GMAIL
