"""
Token-REST adapter (Gmail API).

Lists inbox messages newer than the cursor (the newest internalDate
seen, in ms), hydrates each one with format=full and decodes its
multipart body. A 401 is surfaced as TokenExpiredError so the sync
coordinator can refresh once and retry; it is never retried here.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

import httpx

from mailsift.core.errors import (
    PermanentAuthError,
    ProviderProtocolError,
    TokenExpiredError,
    TransientProviderError,
)
from mailsift.core.retry_manager import BackoffPolicy
from .base import BodyContent, FetchResult, MessageRef, ProviderAdapter, RawMessage
from .mime import extract_gmail_body, gmail_has_attachments, gmail_headers, parse_address

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
MAX_PAGE_SIZE = 100


def _internal_ms(message: Dict) -> int:
    """Gmail's internalDate (ms since epoch, sent as a string); 0 when absent."""
    return int(message.get('internalDate') or 0)


class GmailAdapter(ProviderAdapter):
    """Gmail REST implementation of the Provider Adapter contract."""

    kind = "gmail"

    def __init__(self,
                 access_token: str,
                 base_url: str = GMAIL_API_BASE,
                 timeout: float = 20.0,
                 backoff: Optional[BackoffPolicy] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            access_token: OAuth bearer token
            base_url: Gmail API base URL
            timeout: HTTP timeout in seconds
            backoff: Retry policy for transient HTTP failures
            transport: httpx transport (MockTransport in tests)
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.backoff = backoff or BackoffPolicy()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _raise_for_status(self, response: httpx.Response, context: str):
        status = response.status_code
        if status < 400:
            return
        if status == 401:
            raise TokenExpiredError(f"{context}: access token rejected (HTTP 401)")
        if status == 429 or status >= 500:
            raise TransientProviderError(f"{context}: HTTP {status}")
        if status == 403:
            try:
                reason = response.json().get('error', {}).get('message', '')
            except ValueError:
                reason = ''
            if 'rate' in reason.lower() or 'quota' in reason.lower():
                raise TransientProviderError(f"{context}: {reason or 'rate limited'}")
            raise PermanentAuthError(f"{context}: access denied ({reason or 'HTTP 403'})")
        if status == 404:
            raise ProviderProtocolError(f"{context}: not found")
        raise ProviderProtocolError(f"{context}: HTTP {status}")

    async def _request_once(self, method: str, path: str, context: str, **kwargs) -> Dict:
        headers = {'Authorization': f'Bearer {self.access_token}'}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{context}: timeout", cause=e) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{context}: {e}", cause=e) from e
        self._raise_for_status(response, context)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderProtocolError(f"{context}: invalid JSON response", cause=e) from e

    async def _request(self, method: str, path: str, context: str, **kwargs) -> Dict:
        return await self.backoff.run(
            lambda: self._request_once(method, path, context, **kwargs),
            is_retryable=lambda e: isinstance(e, TransientProviderError),
            operation_name=f"Gmail {context}",
        )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _list_ids(self, query: str, limit: Optional[int] = None) -> List[str]:
        """Inbox message ids for `query`, newest first; limit=None walks every page."""
        ids: List[str] = []
        page_token: Optional[str] = None
        while limit is None or len(ids) < limit:
            wanted = MAX_PAGE_SIZE if limit is None else min(MAX_PAGE_SIZE, limit - len(ids))
            params = {'q': query, 'labelIds': 'INBOX', 'maxResults': wanted}
            if page_token:
                params['pageToken'] = page_token
            page = await self._request('GET', '/users/me/messages', 'list messages', params=params)
            ids.extend(m['id'] for m in page.get('messages', []) or [])
            page_token = page.get('nextPageToken')
            if not page_token:
                break
        return ids if limit is None else ids[:limit]

    def _to_raw_message(self, message: Dict) -> RawMessage:
        try:
            return self._decode_message(message)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderProtocolError(
                f"malformed Gmail message {message.get('id', '?')}: {type(e).__name__}", cause=e) from e

    def _decode_message(self, message: Dict) -> RawMessage:
        payload = message.get('payload') or {}
        headers = gmail_headers(payload)
        from_name, from_address = parse_address(headers.get('from', ''))
        label_ids = message.get('labelIds') or []
        body = extract_gmail_body(payload)

        internal_ms = _internal_ms(message)
        received_at = (datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
                       if internal_ms else None)

        return RawMessage(
            provider_message_id=message['id'],
            provider_uid=message['id'],
            thread_id=message.get('threadId'),
            from_address=from_address,
            from_name=from_name or None,
            to_address=headers.get('to'),
            subject=headers.get('subject'),
            snippet=message.get('snippet'),
            received_at=received_at,
            list_unsubscribe=headers.get('list-unsubscribe'),
            has_attachments=gmail_has_attachments(payload),
            labels=list(label_ids),
            is_read='UNREAD' not in label_ids,
            is_starred='STARRED' in label_ids,
            direction='outbound' if 'SENT' in label_ids else 'inbound',
            body_text=body.text,
            body_html=body.html,
        )

    async def list_new_messages(self, cursor: int, limit: int, full_sync: bool = False) -> FetchResult:
        query = 'in:inbox'
        if full_sync or cursor:
            if cursor and not full_sync:
                # after: takes seconds; same-second overlap is absorbed by dedup
                query += f' after:{cursor // 1000}'
            # Gmail lists newest first; only the oldest `limit` keep the cursor from skipping mail
            ids = await self._list_ids(query)
            ids = list(reversed(ids))[:limit]
        else:
            ids = await self._list_ids(query, limit)

        messages: List[RawMessage] = []
        newest = cursor
        for message_id in ids:
            full = await self._request('GET', f'/users/me/messages/{message_id}', 'get message',
                                       params={'format': 'full'})
            raw = self._to_raw_message(full)
            internal_ms = _internal_ms(full)
            if not full_sync and cursor and internal_ms and internal_ms <= cursor:
                continue
            newest = max(newest, internal_ms)
            messages.append(raw)

        logger.debug(f"Gmail: {len(messages)} messages hydrated, cursor candidate {newest}")
        return FetchResult(messages=messages, new_cursor=newest)

    # ------------------------------------------------------------------
    # Single-message operations
    # ------------------------------------------------------------------

    async def fetch_body(self, ref: MessageRef) -> BodyContent:
        full = await self._request('GET', f'/users/me/messages/{ref.provider_uid}', 'get message',
                                   params={'format': 'full'})
        try:
            return extract_gmail_body(full.get('payload') or {})
        except (TypeError, ValueError) as e:
            raise ProviderProtocolError(
                f"malformed body for Gmail message {ref.provider_uid}: {type(e).__name__}", cause=e) from e

    async def modify_labels(self, ref: MessageRef,
                            add: Optional[List[str]] = None,
                            remove: Optional[List[str]] = None) -> None:
        await self._request('POST', f'/users/me/messages/{ref.provider_uid}/modify', 'modify labels',
                            json={'addLabelIds': add or [], 'removeLabelIds': remove or []})

    async def mark_read(self, ref: MessageRef) -> None:
        await self.modify_labels(ref, remove=['UNREAD'])

    async def archive(self, ref: MessageRef) -> None:
        await self.modify_labels(ref, remove=['INBOX'])

    async def trash(self, ref: MessageRef) -> None:
        await self._request('POST', f'/users/me/messages/{ref.provider_uid}/trash', 'trash message')
