"""
Unit tests for the Gmail REST adapter (httpx MockTransport).
"""
import base64
import json
import re

import httpx
import pytest

from mailsift.core.errors import (
    PermanentAuthError,
    ProviderProtocolError,
    TokenExpiredError,
    TransientProviderError,
)
from mailsift.core.providers import GmailAdapter, MessageRef
from mailsift.core.retry_manager import BackoffPolicy


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip('=')


def _message(message_id: str, internal_ms: int, labels=('INBOX', 'UNREAD')):
    return {
        'id': message_id,
        'threadId': f"t-{message_id}",
        'internalDate': str(internal_ms),
        'labelIds': list(labels),
        'snippet': 'Hi there',
        'payload': {
            'mimeType': 'multipart/alternative',
            'headers': [
                {'name': 'From', 'value': 'Bob Builder <Bob@Example.com>'},
                {'name': 'To', 'value': 'me@gmail.com'},
                {'name': 'Subject', 'value': f'Subject {message_id}'},
            ],
            'parts': [
                {'mimeType': 'text/plain', 'body': {'data': _b64(f'Plain body {message_id}')}},
                {'mimeType': 'text/html', 'body': {'data': _b64(f'<p>HTML body {message_id}</p>')}},
            ],
        },
    }


class GmailServer:
    """Minimal in-memory Gmail API."""

    def __init__(self, messages, page_size=None):
        self.messages = {m['id']: m for m in messages}
        self.page_size = page_size
        self.requests = []
        self.status_override = None

    def _list(self, params) -> httpx.Response:
        # newest first, like the real API
        ordered = sorted(self.messages.values(), key=lambda m: int(m['internalDate']), reverse=True)
        after = re.search(r'after:(\d+)', params.get('q', ''))
        if after:
            ordered = [m for m in ordered if int(m['internalDate']) // 1000 >= int(after.group(1))]
        start = int(params.get('pageToken') or 0)
        size = int(params['maxResults'])
        if self.page_size:
            size = min(size, self.page_size)
        body = {'messages': [{'id': m['id']} for m in ordered[start:start + size]]}
        if start + size < len(ordered):
            body['nextPageToken'] = str(start + size)
        return httpx.Response(200, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override:
            status, body = self.status_override
            return httpx.Response(status, json=body)
        path = request.url.path
        if request.method == 'POST':
            return httpx.Response(200, json={'id': path.split('/')[-2]})
        if path.endswith('/users/me/messages'):
            return self._list(request.url.params)
        message_id = path.rsplit('/', 1)[-1]
        if message_id in self.messages:
            return httpx.Response(200, json=self.messages[message_id])
        return httpx.Response(404, json={'error': {'message': 'Not Found'}})

    def adapter(self) -> GmailAdapter:
        return GmailAdapter("access-1", backoff=BackoffPolicy(max_attempts=1),
                            transport=httpx.MockTransport(self.handler))


class TestGmailListing:
    """Test listing and hydration"""

    @pytest.mark.asyncio
    async def test_first_sync_hydrates_messages(self):
        """Test messages are hydrated and cursor is the newest internalDate"""
        server = GmailServer([_message('a', 1_700_000_000_000), _message('b', 1_700_000_500_000)])
        adapter = server.adapter()

        result = await adapter.list_new_messages(cursor=0, limit=10)
        await adapter.close()

        assert {m.provider_message_id for m in result.messages} == {'a', 'b'}
        assert result.new_cursor == 1_700_000_500_000
        message = next(m for m in result.messages if m.provider_message_id == 'a')
        assert message.from_address == 'bob@example.com'
        assert message.from_name == 'Bob Builder'
        assert message.body_text == 'Plain body a'
        assert message.body_html == '<p>HTML body a</p>'
        assert message.thread_id == 't-a'
        assert not message.is_read

    @pytest.mark.asyncio
    async def test_cursor_skips_seen_messages(self):
        """Test messages at or before the cursor are not returned"""
        server = GmailServer([_message('a', 1_700_000_000_000), _message('b', 1_700_000_500_000)])
        adapter = server.adapter()

        result = await adapter.list_new_messages(cursor=1_700_000_000_000, limit=10)
        await adapter.close()

        assert [m.provider_message_id for m in result.messages] == ['b']
        assert result.new_cursor == 1_700_000_500_000
        assert server.requests[0].url.params['q'] == 'in:inbox after:1700000000'

    @pytest.mark.asyncio
    async def test_nothing_new_keeps_cursor(self):
        """Test an empty listing returns the input cursor"""
        server = GmailServer([_message('a', 1_700_000_000_000)])
        adapter = server.adapter()

        result = await adapter.list_new_messages(cursor=1_700_000_000_000, limit=10)
        await adapter.close()

        assert result.messages == []
        assert result.new_cursor == 1_700_000_000_000

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self):
        """Test the access token is sent as a bearer header"""
        server = GmailServer([])
        adapter = server.adapter()
        await adapter.list_new_messages(cursor=0, limit=5)
        await adapter.close()
        assert server.requests[0].headers['Authorization'] == 'Bearer access-1'

    @pytest.mark.asyncio
    async def test_full_sync_takes_oldest_messages(self):
        """Test a capped full sync reads the oldest messages and never skips newer ones"""
        server = GmailServer([_message(f'm{i}', i * 1000) for i in range(1, 11)])
        adapter = server.adapter()

        result = await adapter.list_new_messages(cursor=2000, limit=3, full_sync=True)
        await adapter.close()

        assert [m.provider_message_id for m in result.messages] == ['m1', 'm2', 'm3']
        assert result.new_cursor == 3000

    @pytest.mark.asyncio
    async def test_incremental_listing_follows_every_page(self):
        """Test all listing pages are read so the oldest unseen messages come first"""
        server = GmailServer([_message(f'm{i}', i * 1_000_000) for i in range(1, 8)], page_size=2)
        adapter = server.adapter()

        result = await adapter.list_new_messages(cursor=2_500_000, limit=2)
        await adapter.close()

        listings = [r for r in server.requests if r.url.path.endswith('/users/me/messages')]
        assert len(listings) == 3
        assert [m.provider_message_id for m in result.messages] == ['m3', 'm4']
        assert result.new_cursor == 4_000_000

    @pytest.mark.asyncio
    async def test_malformed_body_is_protocol_error(self):
        """Test undecodable body data surfaces as ProviderProtocolError"""
        broken = _message('bad', 1_700_000_000_000)
        broken['payload']['parts'][0]['body']['data'] = 'a'
        server = GmailServer([broken])
        adapter = server.adapter()

        with pytest.raises(ProviderProtocolError):
            await adapter.list_new_messages(cursor=0, limit=5)
        with pytest.raises(ProviderProtocolError):
            await adapter.fetch_body(MessageRef(provider_uid='bad'))
        await adapter.close()


class TestGmailErrors:
    """Test HTTP status mapping"""

    @pytest.mark.asyncio
    async def test_401_is_token_expired(self):
        """Test 401 raises TokenExpiredError without retrying"""
        server = GmailServer([])
        server.status_override = (401, {'error': {'message': 'Invalid Credentials'}})
        adapter = GmailAdapter("stale", backoff=BackoffPolicy(max_attempts=3),
                               transport=httpx.MockTransport(server.handler))

        with pytest.raises(TokenExpiredError):
            await adapter.list_new_messages(cursor=0, limit=5)
        await adapter.close()
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_429_is_transient(self):
        """Test rate limiting is transient"""
        server = GmailServer([])
        server.status_override = (429, {})
        adapter = server.adapter()
        with pytest.raises(TransientProviderError):
            await adapter.list_new_messages(cursor=0, limit=5)
        await adapter.close()

    @pytest.mark.asyncio
    async def test_403_quota_is_transient(self):
        """Test quota 403 is transient"""
        server = GmailServer([])
        server.status_override = (403, {'error': {'message': 'User-rate limit exceeded'}})
        adapter = server.adapter()
        with pytest.raises(TransientProviderError):
            await adapter.list_new_messages(cursor=0, limit=5)
        await adapter.close()

    @pytest.mark.asyncio
    async def test_403_denied_is_permanent(self):
        """Test other 403s are permanent"""
        server = GmailServer([])
        server.status_override = (403, {'error': {'message': 'Gmail API has not been enabled'}})
        adapter = server.adapter()
        with pytest.raises(PermanentAuthError):
            await adapter.list_new_messages(cursor=0, limit=5)
        await adapter.close()


class TestGmailBody:
    """Test on-demand body fetch"""

    @pytest.mark.asyncio
    async def test_fetch_body_decodes_base64url(self):
        """Test unpadded base64url parts are decoded"""
        server = GmailServer([_message('zz', 1_700_000_000_000)])
        adapter = server.adapter()

        body = await adapter.fetch_body(MessageRef(provider_uid='zz'))
        await adapter.close()

        assert body.text == 'Plain body zz'
        assert body.html == '<p>HTML body zz</p>'


class TestGmailMutations:
    """Test label changes"""

    @pytest.mark.asyncio
    async def test_mark_read_and_archive_modify_labels(self):
        """Test mark_read drops UNREAD and archive drops INBOX"""
        server = GmailServer([])
        adapter = server.adapter()

        await adapter.mark_read(MessageRef(provider_uid='m1'))
        await adapter.archive(MessageRef(provider_uid='m1'))
        await adapter.close()

        modify = [r for r in server.requests if r.url.path.endswith('/m1/modify')]
        assert [json.loads(r.content)['removeLabelIds'] for r in modify] == [['UNREAD'], ['INBOX']]

    @pytest.mark.asyncio
    async def test_trash(self):
        """Test trash uses the trash endpoint"""
        server = GmailServer([])
        adapter = server.adapter()

        await adapter.trash(MessageRef(provider_uid='m2'))
        await adapter.close()

        assert server.requests[-1].method == 'POST'
        assert server.requests[-1].url.path.endswith('/users/me/messages/m2/trash')
