"""
Microsoft 365 / Outlook email provider implementation.
Uses Microsoft Graph API for email access.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import msal

from ..credentials import AccessToken, TokenSource
from ..errors import (
    EmailIntegrationError,
    NetworkOrProviderError,
    NotConnected,
    Unauthorized,
    classify_auth_failure,
)
from ..storage import SessionStore
from .base import EmailFilter, EmailMessage, EmailProvider, ProviderType, UserInfo
from .normalizer import normalize_graph_message

logger = logging.getLogger(__name__)

SCOPES = ["Mail.ReadWrite", "User.Read"]
DEFAULT_AUTHORITY = "https://login.microsoftonline.com/consumers"
EARLIEST_RECEIVED = "1900-01-01T00:00:00Z"

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,receivedDateTime,"
    "body,bodyPreview,isRead,flag,importance,hasAttachments,categories"
)


class MsalTokenSource(TokenSource):
    """
    MSAL public-client token acquisition.

    The MSAL token cache is serialized into the session store, so cached
    accounts survive restarts and silent renewal works across processes.
    """

    CACHE_KEY = "outlook_msal_cache"

    def __init__(
        self,
        store: SessionStore,
        client_id: Optional[str] = None,
        authority: str = DEFAULT_AUTHORITY,
        interactive_timeout: int = 300,
    ):
        self.store = store
        self.client_id = client_id
        self.authority = authority or DEFAULT_AUTHORITY
        self.interactive_timeout = interactive_timeout
        self._cache: Optional[msal.SerializableTokenCache] = None
        self._app: Optional[msal.PublicClientApplication] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def prepare(self) -> None:
        """Create the MSAL application (performs authority discovery)."""
        self._get_msal_app()

    def _get_msal_app(self) -> msal.PublicClientApplication:
        """Get or create MSAL application instance."""
        if self._app is None:
            cache = msal.SerializableTokenCache()
            raw = self.store.get(self.CACHE_KEY)
            if raw:
                cache.deserialize(raw)
            self._cache = cache
            self._app = msal.PublicClientApplication(
                self.client_id,
                authority=self.authority,
                token_cache=cache,
            )
        return self._app

    def _persist_cache(self) -> None:
        if self._cache is not None and self._cache.has_state_changed:
            self.store.set(self.CACHE_KEY, self._cache.serialize())

    def _to_token(self, result: Dict[str, Any]) -> AccessToken:
        self._persist_cache()
        return AccessToken(
            access_token=result["access_token"],
            expires_at=time.time() + int(result.get("expires_in", 3600)),
            scope=result.get("scope", " ".join(SCOPES)),
        )

    def acquire_silent(self) -> Optional[AccessToken]:
        app = self._get_msal_app()
        accounts = app.get_accounts()
        if not accounts:
            return None

        result = app.acquire_token_silent(SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return self._to_token(result)
        return None

    def acquire_interactive(self) -> AccessToken:
        app = self._get_msal_app()
        result = app.acquire_token_interactive(
            SCOPES,
            prompt="select_account",
            timeout=self.interactive_timeout,
        )
        if "access_token" in result:
            return self._to_token(result)

        error = f"{result.get('error', '')} {result.get('error_description', '')}".strip()
        raise classify_auth_failure(error or "authentication_canceled", ProviderType.OUTLOOK.value)

    def revoke(self, token: Optional[AccessToken]) -> None:
        # Graph has no revocation endpoint; drop every cached account instead
        try:
            app = self._get_msal_app()
            for account in app.get_accounts():
                app.remove_account(account)
        finally:
            self.store.remove(self.CACHE_KEY)
            self._cache = None
            self._app = None


def _odata_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _odata_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_graph_params(filter: EmailFilter, max_results: int = 50) -> Dict[str, Any]:
    """
    Translate an EmailFilter into Graph query parameters.

    Graph rejects $filter and $orderby next to $search, so a free-text query
    is sent on its own and the structured fields are applied after
    normalization.
    """
    params: Dict[str, Any] = {
        "$top": min(max_results, MicrosoftProvider.MAX_PAGE_SIZE),
        "$select": MESSAGE_FIELDS,
    }

    if filter.query:
        params["$search"] = '"' + filter.query.replace('"', '') + '"'
        return params

    # $orderby on receivedDateTime requires it to lead the $filter
    clauses: List[str] = [
        f"receivedDateTime ge {_odata_datetime(filter.date_from) if filter.date_from else EARLIEST_RECEIVED}"
    ]
    if filter.date_to is not None:
        clauses.append(f"receivedDateTime le {_odata_datetime(filter.date_to)}")
    if filter.is_read is not None:
        clauses.append(f"isRead eq {'true' if filter.is_read else 'false'}")
    if filter.is_starred is not None:
        op = "eq" if filter.is_starred else "ne"
        clauses.append(f"flag/flagStatus {op} 'flagged'")
    if filter.is_important is not None:
        op = "eq" if filter.is_important else "ne"
        clauses.append(f"importance {op} 'high'")
    if filter.has_attachments is not None:
        clauses.append(f"hasAttachments eq {'true' if filter.has_attachments else 'false'}")
    if filter.sender:
        clauses.append(f"from/emailAddress/address eq {_odata_string(filter.sender)}")
    if filter.subject:
        clauses.append(f"contains(subject,{_odata_string(filter.subject)})")

    if len(clauses) > 1 or filter.date_from is not None:
        params["$filter"] = " and ".join(clauses)
    params["$orderby"] = "receivedDateTime desc"
    return params


class MicrosoftProvider(EmailProvider):
    """
    Microsoft 365 / Outlook email provider using Graph API.

    Bearer tokens come from the session; a 401 triggers one silent renewal
    and retry before the session is dropped.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    MAX_PAGE_SIZE = 50

    def __init__(
        self,
        session=None,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Microsoft provider.

        Args:
            session: CredentialSession for the Outlook identity
            config: Provider configuration
            transport: httpx transport override
        """
        super().__init__(session=session, config=config)
        self._transport = transport

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.OUTLOOK

    def _auth_failure(self, detail: str) -> Unauthorized:
        if self.session is not None:
            self.session.invalidate()
        return Unauthorized(detail, self.provider_id)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Make authenticated request to Graph API."""
        token = await self._access_token()
        url = f"{self.GRAPH_BASE_URL}{endpoint}"

        async with httpx.AsyncClient(transport=self._transport) as client:
            async def send(bearer: str) -> httpx.Response:
                return await client.request(
                    method=method,
                    url=url,
                    headers={
                        "Authorization": f"Bearer {bearer}",
                        "Content-Type": "application/json",
                    },
                    params=params,
                    json=json_data,
                    timeout=30.0
                )

            try:
                response = await send(token)

                if response.status_code == 401:
                    # Token might be expired, renew silently and retry once
                    self.session.invalidate()
                    try:
                        token = await self._access_token()
                    except NotConnected:
                        raise Unauthorized("Graph API rejected the token (401)", self.provider_id)
                    response = await send(token)
            except httpx.HTTPError as e:
                raise NetworkOrProviderError(f"Graph API request failed: {e}", self.provider_id) from e

        if response.status_code in (401, 403):
            raise self._auth_failure(f"Graph API rejected the token ({response.status_code})")
        if response.status_code >= 400:
            raise NetworkOrProviderError(
                f"Graph API error {response.status_code}: {response.text[:200]}",
                self.provider_id,
            )
        return response.json() if response.content else {}

    async def get_user_info(self) -> UserInfo:
        result = await self._make_request("GET", "/me")
        email = result.get('mail') or result.get('userPrincipalName') or ''
        name = result.get('displayName') or email
        return UserInfo(
            email=email,
            name=name,
            avatar=f"https://ui-avatars.com/api/?name={quote(name)}&background=random",
        )

    async def _fetch_messages(self, filter: EmailFilter, max_results: int) -> List[EmailMessage]:
        params = build_graph_params(filter, max_results)
        result = await self._make_request("GET", "/me/messages", params=params)

        emails = []
        for msg in result.get('value', []):
            try:
                emails.append(normalize_graph_message(msg, room_id=self.room_id or ""))
            except Exception as e:
                logger.warning(f"Error parsing email {msg.get('id')}: {e}")
        return emails

    async def _patch_message(self, message_id: str, changes: Dict[str, Any]) -> bool:
        try:
            await self._make_request("PATCH", f"/me/messages/{message_id}", json_data=changes)
            return True
        except Unauthorized:
            raise
        except EmailIntegrationError as e:
            logger.error(f"Error updating Outlook message {message_id}: {e}")
            return False

    async def mark_as_read(self, message_id: str) -> bool:
        """Mark email as read."""
        return await self._patch_message(message_id, {"isRead": True})

    async def set_starred(self, message_id: str, starred: bool = True) -> bool:
        status = "flagged" if starred else "notFlagged"
        return await self._patch_message(message_id, {"flag": {"flagStatus": status}})

    async def get_unread_count(self) -> int:
        try:
            result = await self._make_request(
                "GET",
                "/me/mailFolders/inbox",
                params={"$select": "unreadItemCount"},
            )
        except Unauthorized:
            raise
        except EmailIntegrationError as e:
            logger.warning(f"Failed to get Outlook unread count: {e}")
            return 0
        return int(result.get('unreadItemCount', 0) or 0)
