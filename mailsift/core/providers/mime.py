"""
MIME helpers shared by the provider adapters.

- RFC822 parsing for IMAP bodies (stdlib email package)
- Gmail payload decoding (base64url, nested multipart walk)
- Header/address normalization and HTML to text conversion
"""
import base64
import email
from email import policy
from email.header import decode_header, make_header
from email.utils import parseaddr
import logging
import re
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .base import BodyContent

logger = logging.getLogger(__name__)

# Map common unknown/non-standard encodings to known ones
_ENCODING_MAP = {
    'x-unknown': 'utf-8',
    'x-euc-jp': 'euc-jp',
    'x-sjis': 'shift-jis',
    'x-gb2312': 'gb2312',
    'x-big5': 'big5',
}


def decode_payload(payload: bytes, charset: Optional[str]) -> str:
    """Decode a body part with fallbacks for unknown/invalid encodings."""
    charset = (charset or 'utf-8').lower()
    charset = _ENCODING_MAP.get(charset, charset)
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        logger.debug(f"Unknown charset '{charset}', falling back to utf-8")
        return payload.decode('utf-8', errors='replace')


def decode_mime_header(value) -> str:
    """Decode RFC2047 encoded words (=?utf-8?Q?...?=)."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return str(value)


def parse_address(header: Optional[str]) -> Tuple[str, str]:
    """
    Split a From/To header into (display name, lower-cased address).

    Falls back to the raw header when no address can be extracted.
    """
    if not header:
        return "", ""
    name, address = parseaddr(decode_mime_header(header))
    if not address or '@' not in address:
        return name.strip(), header.strip().lower()
    return name.strip().strip('"'), address.strip().lower()


def parse_rfc822_body(raw: bytes) -> BodyContent:
    """Extract the first text/plain and text/html parts, skipping attachments."""
    msg = email.message_from_bytes(raw, policy=policy.default)
    text_body: Optional[str] = None
    html_body: Optional[str] = None

    for part in msg.walk():
        if part.is_multipart():
            continue
        disposition = str(part.get('Content-Disposition', ''))
        if 'attachment' in disposition:
            continue
        content_type = part.get_content_type()
        if content_type not in ('text/plain', 'text/html'):
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        decoded = decode_payload(payload, part.get_content_charset())
        if content_type == 'text/plain' and text_body is None:
            text_body = decoded
        elif content_type == 'text/html' and html_body is None:
            html_body = decoded

    return BodyContent(text=text_body or "", html=html_body or "").truncated()


def decode_base64url(data: str) -> str:
    """Decode Gmail's URL-safe base64 (padding is often omitted)."""
    if not data:
        return ""
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8', errors='replace')


def gmail_headers(payload: Dict) -> Dict[str, str]:
    """Header list to dict with lower-cased names (first occurrence wins)."""
    headers: Dict[str, str] = {}
    for header in payload.get('headers', []) or []:
        name = (header.get('name') or '').lower()
        if name and name not in headers:
            headers[name] = header.get('value', '')
    return headers


def extract_gmail_body(payload: Dict) -> BodyContent:
    """Walk a Gmail message payload (possibly nested multipart) for text and HTML."""
    found = {'text': None, 'html': None}

    def walk(part: Dict):
        mime_type = part.get('mimeType', '')
        data = (part.get('body') or {}).get('data')
        if data and not part.get('filename'):
            if mime_type == 'text/plain' and found['text'] is None:
                found['text'] = decode_base64url(data)
            elif mime_type == 'text/html' and found['html'] is None:
                found['html'] = decode_base64url(data)
        for child in part.get('parts', []) or []:
            walk(child)

    walk(payload)
    return BodyContent(text=found['text'] or "", html=found['html'] or "").truncated()


def gmail_has_attachments(payload: Dict) -> bool:
    def walk(part: Dict) -> bool:
        if part.get('filename') and (part.get('body') or {}).get('attachmentId'):
            return True
        return any(walk(child) for child in part.get('parts', []) or [])
    return walk(payload)


def html_to_text(html: str) -> str:
    """Strip tags, scripts and styles; collapse whitespace."""
    if not html:
        return ""
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(["script", "style"]):
        tag.decompose()
    return re.sub(r'\s+', ' ', soup.get_text(separator=' ')).strip()


def split_labels(flags: List) -> List[str]:
    """IMAP flags (bytes) to plain strings."""
    return [f.decode('utf-8', errors='replace') if isinstance(f, bytes) else str(f) for f in flags or []]
