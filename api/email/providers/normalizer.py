"""
Maps raw provider payloads onto the canonical EmailMessage.

Gmail messages arrive as Gmail API resources (headers + MIME part tree with
base64url bodies); Outlook messages arrive as Microsoft Graph message
resources.
"""

import base64
import logging
import re
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from .base import EmailAddress, EmailBody, EmailMessage, ProviderType

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')
NO_SUBJECT = 'No Subject'


def parse_address(value: Optional[str]) -> EmailAddress:
    """Split "Name <email>" or a bare address; name falls back to the address."""
    if not value:
        return EmailAddress(name="", email="")
    name, address = parseaddr(value)
    address = address or value.strip()
    name = name.strip().strip('"') or address
    return EmailAddress(name=name, email=address)


def parse_address_list(value: Optional[str]) -> List[EmailAddress]:
    """Parse a comma separated address header."""
    if not value:
        return []
    result = []
    for name, address in getaddresses([value]):
        if not address:
            continue
        result.append(EmailAddress(name=name.strip() or address, email=address))
    return result


def html_to_text(html: str) -> str:
    """Strip markup, scripts and styles; collapse whitespace to one line."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    text = soup.get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()


def decode_base64url(data: str) -> str:
    """Decode base64url encoded data."""
    try:
        # Add padding if needed
        padding = 4 - len(data) % 4
        if padding != 4:
            data += '=' * padding
        return base64.urlsafe_b64decode(data).decode('utf-8', errors='replace')
    except Exception:
        return ""


# ---- Gmail -------------------------------------------------------------

def _get_header(headers: List[Dict[str, str]], name: str) -> str:
    for header in headers:
        if header.get('name', '').lower() == name.lower():
            return header.get('value', '')
    return ""


def _walk_parts(part: Dict[str, Any]):
    yield part
    for subpart in part.get('parts', []) or []:
        yield from _walk_parts(subpart)


def extract_gmail_body(payload: Dict[str, Any], snippet: str = "") -> EmailBody:
    """Prefer text/plain; fall back to stripped HTML, then the snippet."""
    text: Optional[str] = None
    html: Optional[str] = None

    for part in _walk_parts(payload):
        data = (part.get('body') or {}).get('data')
        if not data:
            continue
        mime_type = part.get('mimeType', '')
        if mime_type == 'text/plain' and text is None:
            text = decode_base64url(data)
        elif mime_type == 'text/html' and html is None:
            html = decode_base64url(data)

    if text:
        return EmailBody(text=text, html=html)
    if html:
        return EmailBody(text=html_to_text(html), html=html)
    return EmailBody(text=snippet or "")


def _gmail_has_attachments(payload: Dict[str, Any]) -> bool:
    return any(part.get('filename') for part in _walk_parts(payload))


def _gmail_date(msg: Dict[str, Any], headers: List[Dict[str, str]]) -> datetime:
    internal = msg.get('internalDate')
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            pass
    date_header = _get_header(headers, 'Date')
    if date_header:
        try:
            return parsedate_to_datetime(date_header)
        except Exception:
            pass
    return datetime.now(timezone.utc)


def normalize_gmail_message(msg: Dict[str, Any], room_id: str = "") -> EmailMessage:
    """Parse a Gmail API message (format=full) into an EmailMessage."""
    payload = msg.get('payload', {}) or {}
    headers = payload.get('headers', []) or []
    labels = list(msg.get('labelIds', []) or [])
    snippet = msg.get('snippet', '') or ''

    return EmailMessage(
        id=msg.get('id', ''),
        thread_id=msg.get('threadId'),
        subject=_get_header(headers, 'Subject') or NO_SUBJECT,
        sender=parse_address(_get_header(headers, 'From')),
        to=parse_address_list(_get_header(headers, 'To')),
        cc=parse_address_list(_get_header(headers, 'Cc')),
        date=_gmail_date(msg, headers),
        body=extract_gmail_body(payload, snippet),
        labels=labels,
        is_read='UNREAD' not in labels,
        is_starred='STARRED' in labels,
        is_important='IMPORTANT' in labels,
        has_attachments=_gmail_has_attachments(payload),
        snippet=snippet,
        provider_id=ProviderType.GMAIL.value,
        room_id=room_id,
    )


# ---- Microsoft Graph ---------------------------------------------------

def _graph_address(recipient: Optional[Dict[str, Any]]) -> EmailAddress:
    data = (recipient or {}).get('emailAddress', recipient or {}) or {}
    address = data.get('address', '') or ''
    return EmailAddress(name=data.get('name') or address, email=address)


def extract_graph_body(body: Optional[Dict[str, Any]], preview: str = "") -> EmailBody:
    if not body:
        return EmailBody(text=preview or "")
    content = body.get('content', '') or ''
    if (body.get('contentType') or '').lower() == 'html':
        return EmailBody(text=html_to_text(content) or preview or "", html=content)
    return EmailBody(text=content or preview or "")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def normalize_graph_message(msg: Dict[str, Any], room_id: str = "") -> EmailMessage:
    """Parse a Graph API message resource into an EmailMessage."""
    preview = msg.get('bodyPreview', '') or ''
    received = _parse_iso(msg.get('receivedDateTime')) or datetime.now(timezone.utc)

    return EmailMessage(
        id=msg.get('id', ''),
        thread_id=msg.get('conversationId'),
        subject=msg.get('subject') or NO_SUBJECT,
        sender=_graph_address(msg.get('from')),
        to=[_graph_address(r) for r in msg.get('toRecipients', []) or []],
        cc=[_graph_address(r) for r in msg.get('ccRecipients', []) or []],
        date=received,
        body=extract_graph_body(msg.get('body'), preview),
        labels=list(msg.get('categories', []) or []),
        is_read=bool(msg.get('isRead', False)),
        is_starred=(msg.get('flag') or {}).get('flagStatus') == 'flagged',
        is_important=(msg.get('importance') or '').lower() == 'high',
        has_attachments=bool(msg.get('hasAttachments', False)),
        snippet=preview,
        provider_id=ProviderType.OUTLOOK.value,
        room_id=room_id,
    )

