"""
OAuth credential sessions.

A CredentialSession owns the bearer token of exactly one provider identity.
It restores a cached token, renews silently from previously granted consent,
falls back to the interactive consent flow, and revokes on disconnect. Token
acquisition itself is delegated to a provider specific TokenSource.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import (
    EmailIntegrationError,
    NetworkOrProviderError,
    NotConfigured,
    NotConnected,
    UserCancelled,
)
from .storage import SessionStore

logger = logging.getLogger(__name__)

# Tokens closer than this to expiry are treated as expired
EXPIRY_BUFFER_SECONDS = 5 * 60
SILENT_AUTH_TIMEOUT = 5.0
INTERACTIVE_AUTH_TIMEOUT = 300.0


@dataclass
class AccessToken:
    """Cached bearer credential."""
    access_token: str
    expires_at: float
    scope: str = ""

    def is_valid(self, now: float, buffer: float = EXPIRY_BUFFER_SECONDS) -> bool:
        return bool(self.access_token) and now < self.expires_at - buffer

    def to_json(self) -> str:
        return json.dumps({
            'access_token': self.access_token,
            'expires_at': self.expires_at,
            'scope': self.scope,
        })

    @classmethod
    def from_json(cls, raw: str) -> "AccessToken":
        data = json.loads(raw)
        return cls(
            access_token=data['access_token'],
            expires_at=float(data['expires_at']),
            scope=data.get('scope') or "",
        )


class TokenSource(ABC):
    """
    Provider specific token acquisition.

    Methods are blocking; the session runs them in the default executor.
    """

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when client credentials are provisioned."""
        pass

    def prepare(self) -> None:
        """Build client library objects. Called from the adapter readiness step."""
        return None

    @abstractmethod
    def acquire_silent(self) -> Optional[AccessToken]:
        """Renew without user interaction, or return None."""
        pass

    @abstractmethod
    def acquire_interactive(self) -> AccessToken:
        """Run the consent flow. Raises UserCancelled / ConfigurationMismatch."""
        pass

    @abstractmethod
    def revoke(self, token: Optional[AccessToken]) -> None:
        """Invalidate the grant with the provider and drop cached consent."""
        pass


class CredentialSession:
    """
    Bearer credential lifecycle for one provider identity.

    All token access goes through this object. Concurrent authenticate calls
    share one in-flight attempt so a second caller never opens a second
    consent flow.
    """

    def __init__(
        self,
        provider: str,
        token_source: TokenSource,
        store: SessionStore,
        clock: Callable[[], float] = time.time,
        silent_timeout: float = SILENT_AUTH_TIMEOUT,
        interactive_timeout: float = INTERACTIVE_AUTH_TIMEOUT,
    ):
        self.provider = provider
        self.token_source = token_source
        self.store = store
        self.clock = clock
        self.silent_timeout = silent_timeout
        self.interactive_timeout = interactive_timeout
        self._token: Optional[AccessToken] = None
        self._pending: Optional[asyncio.Future] = None
        self._pending_interactive = False

    @property
    def storage_key(self) -> str:
        return f"{self.provider}_token"

    @property
    def is_configured(self) -> bool:
        return self.token_source.is_configured

    @property
    def signed_in(self) -> bool:
        """True while the session holds a non-expired token."""
        return self._token is not None and self._token.is_valid(self.clock(), buffer=0)

    # ---- persistence -------------------------------------------------

    def _store_token(self, token: AccessToken) -> None:
        self._token = token
        try:
            self.store.set(self.storage_key, token.to_json())
        except Exception as e:
            logger.warning(f"Failed to store {self.provider} token info: {e}")

    def _purge(self) -> None:
        self._token = None
        try:
            self.store.remove(self.storage_key)
        except Exception as e:
            logger.warning(f"Failed to remove stored {self.provider} token: {e}")

    def restore(self) -> Optional[AccessToken]:
        """
        Load the persisted token.

        Returns it only while it is more than five minutes from expiry;
        otherwise the stored value is purged and None is returned.
        """
        raw = self.store.get(self.storage_key)
        if not raw:
            return None

        try:
            token = AccessToken.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable {self.provider} token: {e}")
            self._purge()
            return None

        if token.is_valid(self.clock()):
            self._token = token
            logger.info(f"Restored {self.provider} session from storage")
            return token

        logger.info(f"Removed expired {self.provider} token")
        self._purge()
        return None

    # ---- acquisition -------------------------------------------------

    def _clear_pending(self, future: asyncio.Future) -> None:
        if self._pending is future:
            self._pending = None
            self._pending_interactive = False

    async def authenticate(self, interactive: bool = False) -> Optional[AccessToken]:
        """
        Acquire a token.

        Non-interactive renewal returns None on failure or after the silent
        timeout. Interactive acquisition raises UserCancelled when the consent
        flow is abandoned.
        """
        while self._pending is not None:
            pending = self._pending
            pending_interactive = self._pending_interactive
            token = await asyncio.shield(pending)
            # A silent attempt that failed does not satisfy an interactive caller
            if token is not None or pending_interactive or not interactive:
                return token

        if interactive and not self.is_configured:
            raise NotConfigured(f"{self.provider} OAuth client is not configured", self.provider)

        future = asyncio.ensure_future(self._acquire(interactive))
        self._pending = future
        self._pending_interactive = interactive
        future.add_done_callback(self._clear_pending)
        return await asyncio.shield(future)

    async def _acquire(self, interactive: bool) -> Optional[AccessToken]:
        loop = asyncio.get_running_loop()

        if not interactive:
            if not self.is_configured:
                return None
            logger.info(f"Attempting silent {self.provider} authentication...")
            try:
                token = await asyncio.wait_for(
                    loop.run_in_executor(None, self.token_source.acquire_silent),
                    timeout=self.silent_timeout,
                )
            except asyncio.TimeoutError:
                logger.info(f"Silent {self.provider} auth timeout")
                return None
            except Exception as e:
                logger.info(f"Silent {self.provider} auth failed: {e}")
                return None

            if token is None:
                return None
            logger.info(f"Silent {self.provider} auth successful")
            self._store_token(token)
            return token

        logger.info(f"Attempting interactive {self.provider} authentication...")
        try:
            token = await asyncio.wait_for(
                loop.run_in_executor(None, self.token_source.acquire_interactive),
                timeout=self.interactive_timeout,
            )
        except asyncio.TimeoutError:
            raise UserCancelled(
                f"{self.provider} sign-in was not completed in time", self.provider
            )
        except EmailIntegrationError:
            raise
        except Exception as e:
            raise NetworkOrProviderError(
                f"{self.provider} authentication failed: {e}", self.provider
            ) from e

        logger.info(f"Interactive {self.provider} auth successful")
        self._store_token(token)
        return token

    async def sign_in(self) -> AccessToken:
        """Restore, then renew silently, then fall back to the consent flow."""
        if not self.is_configured:
            raise NotConfigured(f"{self.provider} OAuth client is not configured", self.provider)

        if self.signed_in and self._token.is_valid(self.clock()):
            return self._token

        token = self.restore()
        if token:
            return token

        token = await self.authenticate(interactive=False)
        if token:
            return token

        return await self.authenticate(interactive=True)

    async def get_access_token(self) -> str:
        """Return a usable bearer token, renewing silently when needed."""
        if self._token is not None and self._token.is_valid(self.clock()):
            return self._token.access_token

        token = self.restore()
        if token is None:
            token = await self.authenticate(interactive=False)
        if token is None:
            raise NotConnected(f"{self.provider} not connected", self.provider)
        return token.access_token

    def invalidate(self) -> None:
        """Forget the current token after the provider rejected it."""
        logger.warning(f"{self.provider} token rejected, clearing session")
        self._purge()

    async def revoke(self) -> None:
        """Revoke with the provider (best-effort) and clear local state."""
        token = self._token
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.token_source.revoke, token)
            logger.info(f"{self.provider} signed out successfully")
        except Exception as e:
            logger.error(f"{self.provider} sign-out failed: {e}")
        finally:
            self._purge()
