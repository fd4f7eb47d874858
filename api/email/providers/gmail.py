"""
Gmail email provider implementation.
Uses the Gmail REST API through googleapiclient; tokens come from the
provider's CredentialSession.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import requests
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build_from_document
from googleapiclient.discovery_cache import get_static_doc
from googleapiclient.errors import HttpError

from ..credentials import AccessToken, TokenSource
from ..errors import (
    EmailIntegrationError,
    NetworkOrProviderError,
    Unauthorized,
    classify_auth_failure,
)
from ..storage import SessionStore
from .base import EmailFilter, EmailMessage, EmailProvider, ProviderType, UserInfo
from .normalizer import normalize_gmail_message

logger = logging.getLogger(__name__)

SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/gmail.modify',
]

USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _expiry_epoch(creds: Credentials) -> float:
    # google-auth keeps expiry as a naive UTC datetime
    if creds.expiry is None:
        return datetime.now(timezone.utc).timestamp() + 3600
    return creds.expiry.replace(tzinfo=timezone.utc).timestamp()


class GoogleTokenSource(TokenSource):
    """
    Google OAuth2 token acquisition.

    Interactive sign-in runs the installed-app flow with a local redirect
    server. The resulting authorized-user credentials (including the refresh
    token) are kept in the session store so later silent renewals need no
    user interaction.
    """

    def __init__(
        self,
        store: SessionStore,
        client_secrets_file: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_port: int = 0,
        interactive_timeout: int = 300,
        scopes: Optional[List[str]] = None,
        credentials_key: str = "gmail_credentials",
    ):
        self.store = store
        self.scopes = scopes or SCOPES
        self.credentials_key = credentials_key
        self.client_secrets_file = client_secrets_file
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_port = redirect_port
        self.interactive_timeout = interactive_timeout

    @property
    def is_configured(self) -> bool:
        if self.client_id and self.client_secret:
            return True
        return bool(self.client_secrets_file) and os.path.exists(self.client_secrets_file)

    def _client_config(self) -> Dict[str, Any]:
        return {
            'installed': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': ['http://localhost'],
            }
        }

    def _make_flow(self) -> InstalledAppFlow:
        if self.client_id and self.client_secret:
            return InstalledAppFlow.from_client_config(self._client_config(), self.scopes)
        return InstalledAppFlow.from_client_secrets_file(self.client_secrets_file, self.scopes)

    def _save_credentials(self, creds: Credentials) -> AccessToken:
        self.store.set(self.credentials_key, creds.to_json())
        return AccessToken(
            access_token=creds.token,
            expires_at=_expiry_epoch(creds),
            scope=" ".join(creds.scopes or self.scopes),
        )

    def acquire_silent(self) -> Optional[AccessToken]:
        raw = self.store.get(self.credentials_key)
        if not raw:
            return None

        creds = Credentials.from_authorized_user_info(json.loads(raw), self.scopes)
        if not creds.refresh_token:
            return None
        creds.refresh(Request())
        return self._save_credentials(creds)

    def acquire_interactive(self) -> AccessToken:
        flow = self._make_flow()
        try:
            creds = flow.run_local_server(
                port=self.redirect_port,
                timeout_seconds=self.interactive_timeout,
            )
        except EmailIntegrationError:
            raise
        except Exception as e:
            raise classify_auth_failure(str(e), ProviderType.GMAIL.value) from e

        if creds is None or not creds.token:
            raise classify_auth_failure("access_denied", ProviderType.GMAIL.value)
        return self._save_credentials(creds)

    def revoke(self, token: Optional[AccessToken]) -> None:
        try:
            if token is not None:
                response = requests.post(
                    REVOKE_URL,
                    params={'token': token.access_token},
                    headers={'content-type': 'application/x-www-form-urlencoded'},
                    timeout=10,
                )
                if response.status_code != 200:
                    logger.warning(f"Gmail token revoke returned {response.status_code}")
        finally:
            self.store.remove(self.credentials_key)


def _quote(value: str) -> str:
    return f'"{value}"' if ' ' in value else value


def build_gmail_query(filter: EmailFilter) -> str:
    """Translate an EmailFilter into Gmail search syntax."""
    parts: List[str] = []

    if filter.is_read is not None:
        parts.append('is:read' if filter.is_read else 'is:unread')
    if filter.is_starred is not None:
        parts.append('is:starred' if filter.is_starred else '-is:starred')
    if filter.is_important is not None:
        parts.append('is:important' if filter.is_important else '-is:important')
    if filter.has_attachments is not None:
        parts.append('has:attachment' if filter.has_attachments else '-has:attachment')
    if filter.sender:
        parts.append(f'from:{_quote(filter.sender)}')
    if filter.subject:
        parts.append(f'subject:{_quote(filter.subject)}')
    if filter.date_from is not None:
        parts.append(f'after:{int(filter.date_from.timestamp())}')
    if filter.date_to is not None:
        parts.append(f'before:{int(filter.date_to.timestamp())}')
    if filter.query:
        parts.append(filter.query)

    return ' '.join(parts)


class GmailProvider(EmailProvider):
    """
    Gmail email provider using the Gmail API.

    The discovery document is loaded once during initialize(); a service
    object is rebuilt only when the session hands out a different token.
    """

    def __init__(
        self,
        session=None,
        config: Optional[Dict[str, Any]] = None,
        service_factory: Optional[Callable[[str], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Gmail provider.

        Args:
            session: CredentialSession for the Gmail identity
            config: Provider configuration
            service_factory: Builds a Gmail service for a bearer token
            transport: httpx transport used for the userinfo endpoint
        """
        super().__init__(session=session, config=config)
        self._service_factory = service_factory
        self._transport = transport
        self._discovery_doc: Optional[str] = None
        self._service = None
        self._service_token: Optional[str] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    def _initialize_client(self) -> None:
        super()._initialize_client()
        if self._service_factory is not None:
            return
        doc = get_static_doc('gmail', 'v1')
        if doc is None:
            raise RuntimeError("Gmail discovery document not available")
        self._discovery_doc = doc

    def _get_service(self, token: str):
        """Get or create the Gmail API service for this token."""
        if self._service is None or self._service_token != token:
            if self._service_factory is not None:
                self._service = self._service_factory(token)
            else:
                self._service = build_from_document(
                    self._discovery_doc,
                    credentials=Credentials(token=token),
                )
            self._service_token = token
        return self._service

    def _auth_failure(self, detail: str) -> Unauthorized:
        if self.session is not None:
            self.session.invalidate()
        self._service = None
        self._service_token = None
        return Unauthorized(detail, self.provider_id)

    async def _execute(self, build_request: Callable[[Any], Any]) -> Dict[str, Any]:
        """Run a Gmail API request in the executor and map failures."""
        token = await self._access_token()
        service = self._get_service(token)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: build_request(service).execute())
        except HttpError as e:
            status = e.resp.status
            if status in (401, 403):
                raise self._auth_failure(f"Gmail API rejected the token ({status})")
            raise NetworkOrProviderError(f"Gmail API error {status}: {e}", self.provider_id) from e
        except Exception as e:
            raise NetworkOrProviderError(f"Gmail API request failed: {e}", self.provider_id) from e

    async def get_user_info(self) -> UserInfo:
        token = await self._access_token()
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    USERINFO_URL,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            raise NetworkOrProviderError(f"Failed to get user info: {e}", self.provider_id) from e

        if response.status_code in (401, 403):
            raise self._auth_failure(f"Userinfo rejected the token ({response.status_code})")
        if response.status_code >= 400:
            raise NetworkOrProviderError(
                f"Failed to get user info: HTTP {response.status_code}", self.provider_id
            )

        data = response.json()
        email = data.get('email', '')
        return UserInfo(
            email=email,
            name=data.get('name') or email,
            avatar=data.get('picture'),
        )

    async def _fetch_messages(self, filter: EmailFilter, max_results: int) -> List[EmailMessage]:
        query = build_gmail_query(filter)
        logger.debug(f"Gmail list query: {query!r}")

        listing = await self._execute(
            lambda s: s.users().messages().list(userId='me', q=query, maxResults=max_results)
        )
        refs = listing.get('messages', []) or []

        async def fetch_one(message_id: str) -> Dict[str, Any]:
            return await self._execute(
                lambda s: s.users().messages().get(userId='me', id=message_id, format='full')
            )

        details = await asyncio.gather(
            *(fetch_one(ref['id']) for ref in refs[:self.DETAIL_FETCH_LIMIT]),
            return_exceptions=True,
        )

        emails = []
        for ref, detail in zip(refs, details):
            if isinstance(detail, Unauthorized):
                raise detail
            if isinstance(detail, Exception):
                logger.warning(f"Error fetching Gmail message {ref['id']}: {detail}")
                continue
            emails.append(normalize_gmail_message(detail, room_id=self.room_id or ""))
        return emails

    async def _modify(self, message_id: str, body: Dict[str, List[str]]) -> bool:
        try:
            await self._execute(
                lambda s: s.users().messages().modify(userId='me', id=message_id, body=body)
            )
            return True
        except Unauthorized:
            raise
        except EmailIntegrationError as e:
            logger.error(f"Error modifying Gmail message {message_id}: {e}")
            return False

    async def mark_as_read(self, message_id: str) -> bool:
        """Mark email as read by removing UNREAD label."""
        return await self._modify(message_id, {'removeLabelIds': ['UNREAD']})

    async def set_starred(self, message_id: str, starred: bool = True) -> bool:
        if starred:
            return await self._modify(message_id, {'addLabelIds': ['STARRED']})
        return await self._modify(message_id, {'removeLabelIds': ['STARRED']})

    async def get_unread_count(self) -> int:
        try:
            result = await self._execute(
                lambda s: s.users().messages().list(userId='me', q='is:unread', maxResults=1)
            )
        except Unauthorized:
            raise
        except EmailIntegrationError as e:
            logger.warning(f"Failed to get Gmail unread count: {e}")
            return 0
        return int(result.get('resultSizeEstimate', 0) or 0)
