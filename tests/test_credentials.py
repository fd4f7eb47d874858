"""Tests for the OAuth credential session lifecycle."""

import asyncio
import threading

import pytest

from api.email.credentials import AccessToken, CredentialSession
from api.email.errors import NetworkOrProviderError, NotConfigured, NotConnected, UserCancelled

from .conftest import NOW, FakeTokenSource, make_token


# ============================================================================
# Tests: AccessToken
# ============================================================================

class TestAccessToken:

    def test_valid_outside_buffer(self):
        token = make_token(expires_in=301)
        assert token.is_valid(NOW)

    def test_invalid_inside_buffer(self):
        """A token five minutes or less from expiry counts as expired."""
        token = make_token(expires_in=300)
        assert not token.is_valid(NOW)

    def test_json_roundtrip_keeps_scope(self):
        token = make_token()
        restored = AccessToken.from_json(token.to_json())
        assert restored == token


# ============================================================================
# Tests: restore
# ============================================================================

class TestRestore:

    def test_returns_stored_token(self, session, store):
        store.set(session.storage_key, make_token(expires_in=3600).to_json())

        token = session.restore()

        assert token.access_token == "token-1"
        assert session.signed_in

    def test_purges_token_near_expiry(self, session, store):
        store.set(session.storage_key, make_token(expires_in=120).to_json())

        assert session.restore() is None
        assert store.get(session.storage_key) is None
        assert not session.signed_in

    def test_purges_corrupt_blob(self, session, store):
        store.set(session.storage_key, "{not json")

        assert session.restore() is None
        assert store.get(session.storage_key) is None

    def test_nothing_stored(self, session):
        assert session.restore() is None


# ============================================================================
# Tests: sign_in
# ============================================================================

class TestSignIn:

    @pytest.mark.asyncio
    async def test_restored_token_skips_acquisition(self, session, store, token_source):
        store.set(session.storage_key, make_token().to_json())

        token = await session.sign_in()

        assert token.access_token == "token-1"
        assert token_source.silent_calls == 0
        assert token_source.interactive_calls == 0

    @pytest.mark.asyncio
    async def test_silent_renewal_avoids_consent(self, store, clock):
        source = FakeTokenSource(silent=make_token(value="silent-token"))
        session = CredentialSession("gmail", source, store, clock=clock)

        token = await session.sign_in()

        assert token.access_token == "silent-token"
        assert source.interactive_calls == 0
        assert store.get(session.storage_key) is not None

    @pytest.mark.asyncio
    async def test_falls_back_to_interactive(self, session, token_source):
        token = await session.sign_in()

        assert token.access_token == "interactive-token"
        assert token_source.silent_calls == 1
        assert token_source.interactive_calls == 1
        assert session.signed_in

    @pytest.mark.asyncio
    async def test_unconfigured_raises(self, store, clock):
        session = CredentialSession("gmail", FakeTokenSource(configured=False), store, clock=clock)

        with pytest.raises(NotConfigured):
            await session.sign_in()

    @pytest.mark.asyncio
    async def test_cancelled_consent_propagates(self, store, clock):
        source = FakeTokenSource(interactive_error=UserCancelled("closed", "gmail"))
        session = CredentialSession("gmail", source, store, clock=clock)

        with pytest.raises(UserCancelled):
            await session.sign_in()
        assert not session.signed_in

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_network_error(self, store, clock):
        source = FakeTokenSource(interactive_error=RuntimeError("connection reset"))
        session = CredentialSession("gmail", source, store, clock=clock)

        with pytest.raises(NetworkOrProviderError):
            await session.sign_in()

    @pytest.mark.asyncio
    async def test_abandoned_consent_times_out_as_cancelled(self, store, clock):
        gate = threading.Event()
        source = FakeTokenSource(interactive=make_token(), gate=gate)
        session = CredentialSession("gmail", source, store, clock=clock, interactive_timeout=0.05)

        try:
            with pytest.raises(UserCancelled):
                await session.authenticate(interactive=True)
        finally:
            gate.set()


# ============================================================================
# Tests: single-flight
# ============================================================================

class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_interactive_calls_share_one_flow(self, store, clock):
        gate = threading.Event()
        source = FakeTokenSource(interactive=make_token(value="shared"), gate=gate)
        session = CredentialSession("gmail", source, store, clock=clock)

        first = asyncio.ensure_future(session.authenticate(interactive=True))
        second = asyncio.ensure_future(session.authenticate(interactive=True))
        await asyncio.sleep(0.05)
        gate.set()
        results = await asyncio.gather(first, second)

        assert [t.access_token for t in results] == ["shared", "shared"]
        assert source.interactive_calls == 1

    @pytest.mark.asyncio
    async def test_silent_timeout_returns_none(self, store, clock):
        gate = threading.Event()

        class SlowSource(FakeTokenSource):
            def acquire_silent(self):
                gate.wait(timeout=5)
                return make_token()

        session = CredentialSession("gmail", SlowSource(), store, clock=clock, silent_timeout=0.05)
        try:
            assert await session.authenticate(interactive=False) is None
        finally:
            gate.set()


# ============================================================================
# Tests: token access, invalidate and revoke
# ============================================================================

class TestTokenAccess:

    @pytest.mark.asyncio
    async def test_get_access_token_without_session(self, store, clock):
        session = CredentialSession("gmail", FakeTokenSource(), store, clock=clock)

        with pytest.raises(NotConnected):
            await session.get_access_token()

    @pytest.mark.asyncio
    async def test_get_access_token_renews_silently(self, store, clock):
        source = FakeTokenSource(silent=make_token(value="renewed"))
        session = CredentialSession("gmail", source, store, clock=clock)

        assert await session.get_access_token() == "renewed"

    @pytest.mark.asyncio
    async def test_expiry_disconnects(self, session, clock):
        await session.sign_in()
        assert session.signed_in

        clock.advance(3600)

        assert not session.signed_in

    @pytest.mark.asyncio
    async def test_invalidate_clears_storage(self, session, store):
        await session.sign_in()

        session.invalidate()

        assert not session.signed_in
        assert store.get(session.storage_key) is None

    @pytest.mark.asyncio
    async def test_revoke_clears_state_even_on_failure(self, session, store, token_source):
        await session.sign_in()
        token_source.revoke_error = RuntimeError("revocation endpoint down")

        await session.revoke()

        assert len(token_source.revoked) == 1
        assert token_source.revoked[0].access_token == "interactive-token"
        assert not session.signed_in
        assert store.get(session.storage_key) is None
