"""Tests for the provider contract: filters, fixtures, readiness and selection."""

from datetime import datetime, timedelta, timezone

import pytest

from api.email.credentials import CredentialSession
from api.email.errors import AdapterNotReady
from api.email.providers import (
    EmailFilter,
    FixtureProvider,
    GmailProvider,
    MicrosoftProvider,
    ProviderType,
    create_provider,
)
from api.email.providers.base import EmailProvider

from .conftest import FakeTokenSource, make_message

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixture_provider():
    return FixtureProvider(ProviderType.GMAIL, clock=lambda: FIXED_NOW)


# ============================================================================
# Tests: EmailFilter
# ============================================================================

class TestEmailFilter:

    def test_empty_filter_matches_everything(self):
        assert EmailFilter().matches(make_message("1"))

    def test_boolean_fields(self):
        message = make_message("1", is_read=False, is_starred=True)

        assert EmailFilter(is_read=False).matches(message)
        assert not EmailFilter(is_read=True).matches(message)
        assert EmailFilter(is_starred=True).matches(message)
        assert not EmailFilter(is_important=True).matches(message)
        assert EmailFilter(has_attachments=False).matches(message)

    def test_sender_matches_name_or_address(self):
        message = make_message("1")

        assert EmailFilter(sender="ALICE").matches(message)
        assert EmailFilter(sender="example.com").matches(message)
        assert not EmailFilter(sender="bob").matches(message)

    def test_date_range_open_ends(self):
        message = make_message("1")
        before = message.date - timedelta(hours=1)
        after = message.date + timedelta(hours=1)

        assert EmailFilter(date_from=before).matches(message)
        assert EmailFilter(date_to=after).matches(message)
        assert not EmailFilter(date_from=after).matches(message)
        assert EmailFilter(date_from=before, date_to=after).matches(message)

    def test_naive_dates_treated_as_utc(self):
        message = make_message("1")
        assert EmailFilter(date_from=datetime(2024, 3, 1, 8, 0)).matches(message)

    def test_query_can_be_excluded(self):
        message = make_message("1", body="Quarterly numbers attached")
        f = EmailFilter(query="budget")

        assert not f.matches(message)
        assert f.matches(message, include_query=False)


# ============================================================================
# Tests: FixtureProvider
# ============================================================================

class TestFixtureProvider:

    @pytest.mark.asyncio
    async def test_three_messages_one_unread(self, fixture_provider):
        messages = await fixture_provider.list_messages()

        assert [m.id for m in messages] == ["mock_1", "mock_2", "mock_3"]
        assert [m.id for m in messages if not m.is_read] == ["mock_1"]
        assert await fixture_provider.get_unread_count() == 1

    @pytest.mark.asyncio
    async def test_filtered_listing(self, fixture_provider):
        unread = await fixture_provider.list_messages(EmailFilter(is_read=False))
        starred = await fixture_provider.list_messages(EmailFilter(is_starred=True))
        searched = await fixture_provider.list_messages(EmailFilter(query="newsletter"))

        assert [m.id for m in unread] == ["mock_1"]
        assert [m.id for m in starred] == ["mock_2"]
        assert [m.id for m in searched] == ["mock_3"]

    @pytest.mark.asyncio
    async def test_max_results(self, fixture_provider):
        assert len(await fixture_provider.list_messages(max_results=2)) == 2

    @pytest.mark.asyncio
    async def test_mark_as_read_is_idempotent(self, fixture_provider):
        assert await fixture_provider.mark_as_read("mock_1")
        assert await fixture_provider.mark_as_read("mock_1")

        assert await fixture_provider.get_unread_count() == 0
        assert await fixture_provider.list_messages(EmailFilter(is_read=False)) == []

    @pytest.mark.asyncio
    async def test_unknown_message(self, fixture_provider):
        assert not await fixture_provider.mark_as_read("nope")
        assert not await fixture_provider.set_starred("nope")

    @pytest.mark.asyncio
    async def test_star_and_unstar(self, fixture_provider):
        await fixture_provider.set_starred("mock_3", True)
        await fixture_provider.set_starred("mock_2", False)

        starred = await fixture_provider.list_messages(EmailFilter(is_starred=True))
        assert [m.id for m in starred] == ["mock_3"]

    @pytest.mark.asyncio
    async def test_messages_tagged_with_bound_room(self, fixture_provider):
        fixture_provider.bind_room("gmail-demo@gmail.com")

        messages = await fixture_provider.list_messages()

        assert {m.room_id for m in messages} == {"gmail-demo@gmail.com"}

    @pytest.mark.asyncio
    async def test_returned_messages_are_copies(self, fixture_provider):
        messages = await fixture_provider.list_messages()
        messages[0].is_read = True

        assert await fixture_provider.get_unread_count() == 1

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, fixture_provider):
        assert not fixture_provider.is_connected

        user = await fixture_provider.connect()
        assert user.email == "demo@gmail.com"
        assert fixture_provider.is_connected

        await fixture_provider.disconnect()
        assert not fixture_provider.is_connected


# ============================================================================
# Tests: create_provider
# ============================================================================

class TestCreateProvider:

    def test_unconfigured_session_uses_fixture(self, store):
        session = CredentialSession("gmail", FakeTokenSource(configured=False), store)

        provider = create_provider(ProviderType.GMAIL, session=session)

        assert isinstance(provider, FixtureProvider)
        assert provider.is_demo

    def test_configured_session_uses_live_provider(self, store):
        gmail = create_provider("gmail", session=CredentialSession("gmail", FakeTokenSource(), store))
        outlook = create_provider("outlook", session=CredentialSession("outlook", FakeTokenSource(), store))

        assert isinstance(gmail, GmailProvider)
        assert isinstance(outlook, MicrosoftProvider)
        assert not gmail.is_demo

    def test_forced_demo_mode(self, store):
        session = CredentialSession("outlook", FakeTokenSource(), store)
        provider = create_provider(ProviderType.OUTLOOK, session=session, demo_mode="true")
        assert isinstance(provider, FixtureProvider)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_provider("yahoo")


# ============================================================================
# Tests: readiness
# ============================================================================

class FlakyProvider(EmailProvider):
    """Provider whose client build fails a set number of times."""

    READY_BACKOFF = 0.0

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    @property
    def provider_type(self):
        return ProviderType.GMAIL

    def _initialize_client(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError("discovery unavailable")

    async def get_user_info(self):
        raise NotImplementedError

    async def _fetch_messages(self, filter, max_results):
        return []

    async def mark_as_read(self, message_id):
        return True

    async def set_starred(self, message_id, starred=True):
        return True

    async def get_unread_count(self):
        return 0


class TestReadiness:

    @pytest.mark.asyncio
    async def test_retries_until_ready(self):
        provider = FlakyProvider(failures=2)

        await provider.initialize()
        await provider.initialize()

        assert provider.attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        provider = FlakyProvider(failures=10)

        with pytest.raises(AdapterNotReady):
            await provider.initialize()
        assert provider.attempts == FlakyProvider.READY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_session_token_source_is_prepared(self, store):
        source = FakeTokenSource()
        provider = create_provider("outlook", session=CredentialSession("outlook", source, store))

        await provider.initialize()

        assert source.prepared == 1
