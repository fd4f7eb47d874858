"""Tests for the inbox service wiring providers, rooms and sync."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from api.email.credentials import CredentialSession
from api.email.errors import NotConfigured, RoomNotFound
from api.email.providers import EmailFilter, FixtureProvider, ProviderType, create_provider
from api.email.providers.base import UserInfo
from api.email.service import InboxService
from meeting_ai.calendar_service import InMemoryCalendar
from meeting_ai.crm_service import InMemoryCRM
from meeting_ai.email_parser import EmailParser

from .conftest import FakeTokenSource

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(fixed_today):
    providers = [
        FixtureProvider(ProviderType.GMAIL, clock=lambda: NOW),
        FixtureProvider(ProviderType.OUTLOOK, clock=lambda: NOW),
    ]
    return InboxService(
        providers,
        parser=EmailParser(today=fixed_today),
        calendar=InMemoryCalendar(today=fixed_today),
        crm=InMemoryCRM(),
        clock=lambda: NOW,
    )


class TestProviders:

    def test_initially_disconnected(self, service):
        records = service.get_providers()

        assert [r.id for r in records] == ["gmail", "outlook"]
        assert all(r.connection_state == "disconnected" for r in records)
        assert all(r.is_demo for r in records)

    @pytest.mark.asyncio
    async def test_connect_creates_room(self, service):
        record, room = await service.connect_provider("gmail")

        assert record.connection_state == "connected"
        assert record.account_info.email == "demo@gmail.com"
        assert room.id == "gmail-demo@gmail.com"
        assert [r.id for r in service.get_rooms()] == [room.id]

    @pytest.mark.asyncio
    async def test_disconnect_deactivates_and_clears(self, service):
        await service.connect_provider("gmail")

        record = await service.disconnect_provider("gmail")

        assert record.connection_state == "disconnected"
        assert record.account_info is None
        assert service.get_rooms() == []
        assert len(service.get_rooms(active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_reconnect_reuses_room(self, service):
        _, first = await service.connect_provider("outlook")
        await service.disconnect_provider("outlook")
        _, second = await service.connect_provider("outlook")

        assert first.id == second.id
        assert len(service.get_rooms(active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_connect_reads_unread_count(self, service):
        _, room = await service.connect_provider("gmail")

        assert room.unread_count == 1
        assert service.get_rooms()[0].unread_count == 1
        assert room.last_sync_time is None

    @pytest.mark.asyncio
    async def test_unread_count_failure_does_not_fail_connect(self, service):
        service.providers["gmail"].get_unread_count = AsyncMock(side_effect=RuntimeError("quota"))

        record, room = await service.connect_provider("gmail")

        assert record.connection_state == "connected"
        assert room.unread_count == 0

    @pytest.mark.asyncio
    async def test_other_account_replaces_active_room(self, service):
        provider = service.providers["gmail"]
        provider.get_user_info = AsyncMock(return_value=UserInfo(email="a@example.com", name="A"))
        _, first = await service.connect_provider("gmail")

        provider.get_user_info = AsyncMock(return_value=UserInfo(email="b@example.com", name="B"))
        _, second = await service.connect_provider("gmail")

        assert [r.id for r in service.get_rooms()] == [second.id]
        assert not service.registry.get_room(first.id).is_active
        assert service.get_providers()[0].account_info.email == "b@example.com"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, service):
        with pytest.raises(ValueError):
            await service.connect_provider("yahoo")

    @pytest.mark.asyncio
    async def test_forced_live_mode_without_credentials(self, store, fixed_today):
        session = CredentialSession("gmail", FakeTokenSource(configured=False), store)
        provider = create_provider(ProviderType.GMAIL, session=session, demo_mode="false")
        service = InboxService([provider], parser=EmailParser(today=fixed_today))

        with pytest.raises(NotConfigured):
            await service.connect_provider("gmail")
        assert service.get_rooms() == []


class TestRoomOperations:

    @pytest.mark.asyncio
    async def test_messages_in_room(self, service):
        _, room = await service.connect_provider("gmail")

        messages = await service.get_messages(room.id)
        unread = await service.get_messages(room.id, EmailFilter(is_read=False))

        assert len(messages) == 3
        assert [m.id for m in unread] == ["mock_1"]
        assert all(m.room_id == room.id for m in messages)

    @pytest.mark.asyncio
    async def test_mark_and_star(self, service):
        _, room = await service.connect_provider("gmail")

        assert await service.mark_as_read(room.id, "mock_1")
        assert await service.set_starred(room.id, "mock_3")

        assert await service.get_messages(room.id, EmailFilter(is_read=False)) == []
        starred = await service.get_messages(room.id, EmailFilter(is_starred=True))
        assert [m.id for m in starred] == ["mock_2", "mock_3"]

    @pytest.mark.asyncio
    async def test_unknown_room(self, service):
        with pytest.raises(RoomNotFound):
            await service.get_messages("gmail-ghost@gmail.com")

    @pytest.mark.asyncio
    async def test_sync_schedules_demo_meeting(self, service):
        _, room = await service.connect_provider("gmail")

        status = await service.sync_room(room.id)

        assert status.total_messages == 1
        assert status.synced_messages == 1
        result = status.results[0]
        assert result.parsed_data.intent == "schedule_meeting"
        assert result.meeting_scheduled
        events = await service.calendar.get_events(datetime(2024, 3, 5), datetime(2024, 3, 6))
        assert [e.title for e in events] == ["Meeting with John Smith - Acme Corp"]
        assert events[0].start == datetime(2024, 3, 5, 10, 0)

        stored = service.get_rooms()[0]
        assert stored.unread_count == 1
        assert stored.last_sync_time == NOW
        assert service.get_sync_status(room.id).finished_at == NOW

    @pytest.mark.asyncio
    async def test_sync_status_before_first_pass(self, service):
        _, room = await service.connect_provider("gmail")
        assert service.get_sync_status(room.id) is None

    @pytest.mark.asyncio
    async def test_crm_sync_when_connected(self, service):
        service.crm.connect_provider("hubspot")
        _, room = await service.connect_provider("gmail")

        await service.sync_room(room.id)

        # The demo message carries no address, so the contact is keyed by id
        contacts = service.crm.get_contacts()
        assert [c.name for c in contacts] == ["John Smith"]
        assert contacts[0].company == "Acme Corp"
