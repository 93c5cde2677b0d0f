"""
Stateful-session adapter (IMAP).

Every operation holds the per-mailbox lock while one worker thread
(asyncio.to_thread) connects, runs the blocking imapclient calls and logs
out. A cancelled operation keeps the lock until that thread has finished,
so a mailbox is never touched by two threads at once.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, TypeVar
import logging

from imapclient import IMAPClient, SEEN

from mailsift.core.errors import (
    ProviderError,
    ProviderProtocolError,
    TransientProviderError,
    classify_provider_exception,
)
from mailsift.core.retry_manager import BackoffPolicy
from .base import BodyContent, FetchResult, MessageRef, ProviderAdapter, RawMessage
from .mime import decode_mime_header, parse_rfc822_body, split_labels

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIST_UNSUBSCRIBE_FIELD = b'BODY[HEADER.FIELDS (LIST-UNSUBSCRIBE)]'
HEADER_FETCH_ITEMS = ['ENVELOPE', 'FLAGS', 'INTERNALDATE', 'BODY.PEEK[HEADER.FIELDS (LIST-UNSUBSCRIBE)]']


@dataclass
class IMAPConfig:
    """IMAP connection configuration"""
    host: str
    username: str
    port: int = 993
    use_ssl: bool = True
    folder: str = 'INBOX'

    # Authentication type: "password" or "oauth2"
    auth_type: str = "password"
    password: Optional[str] = None
    access_token: Optional[str] = None  # XOAUTH2 (Microsoft 365)

    archive_folder: str = 'Archive'
    trash_folder: str = 'Trash'

    @property
    def mailbox_key(self) -> str:
        return f"{self.username.lower()}@{self.host.lower()}/{self.folder}"


class MailboxLocks:
    """
    Registry of per-mailbox locks shared by all IMAP adapters of a process.

    The lock is held for the duration of one adapter operation, so a
    mailbox is never worked on by two operations at once.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, key: str, timeout: float):
        lock = self._get(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Mailbox {key} is busy") from e
        try:
            yield
        finally:
            lock.release()


def _envelope_address(addresses) -> Tuple[str, str]:
    """First address of an envelope field as (name, address)."""
    if not addresses:
        return "", ""
    addr = addresses[0]
    mailbox = (addr.mailbox or b'').decode('utf-8', errors='replace')
    host = (addr.host or b'').decode('utf-8', errors='replace')
    name = decode_mime_header(addr.name) if addr.name else ""
    address = f"{mailbox}@{host}".lower() if host else mailbox.lower()
    return name, address


def _parse_list_unsubscribe(raw: Optional[bytes]) -> Optional[str]:
    if not raw:
        return None
    text = raw.decode('utf-8', errors='replace').strip()
    if ':' not in text:
        return None
    value = text.split(':', 1)[1]
    value = ' '.join(value.split())
    return value or None


class IMAPAdapter(ProviderAdapter):
    """IMAP implementation of the Provider Adapter contract."""

    kind = "imap"

    def __init__(self,
                 config: IMAPConfig,
                 locks: MailboxLocks,
                 backoff: Optional[BackoffPolicy] = None,
                 timeout: int = 30,
                 header_batch_size: int = 50,
                 client_factory: Callable[..., IMAPClient] = IMAPClient):
        """
        Args:
            config: IMAP connection configuration
            locks: Shared mailbox lock registry
            backoff: Retry policy for establishing the session
            timeout: Network timeout in seconds (also bounds the lock wait)
            header_batch_size: UIDs per header FETCH
            client_factory: IMAPClient constructor (replaced in tests)
        """
        self.config = config
        self.locks = locks
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self.header_batch_size = header_batch_size
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def _connect(self) -> IMAPClient:
        logger.debug(f"Connecting to IMAP server {self.config.host}:{self.config.port} (timeout: {self.timeout}s)")
        client = self._client_factory(
            host=self.config.host,
            port=self.config.port,
            ssl=self.config.use_ssl,
            timeout=self.timeout
        )
        try:
            if self.config.auth_type == "oauth2":
                client.oauth2_login(self.config.username, self.config.access_token)
            else:
                client.login(self.config.username, self.config.password)
        except Exception:
            self._logout(client)
            raise
        return client

    def _logout(self, client: IMAPClient):
        try:
            client.logout()
        except Exception as e:
            logger.warning(f"Error during logout from {self.config.host}: {e}")

    def _session_sync(self, work: Callable[..., T], *args) -> T:
        """Connect, run work(client, *args) and log out, all on the calling thread."""
        client = self._connect()
        try:
            return work(client, *args)
        finally:
            self._logout(client)

    async def _in_thread(self, fn: Callable[..., T], *args, context: str) -> T:
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The thread cannot be interrupted; hold the mailbox until it has logged out
            await asyncio.wait({worker})
            if not worker.cancelled() and worker.exception() is not None:
                logger.warning(f"{context} failed after cancellation: {worker.exception()}")
            raise
        except ProviderError:
            raise
        except Exception as e:
            raise classify_provider_exception(e, context) from e

    async def _run(self, work: Callable[..., T], *args, context: str) -> T:
        """One locked session per operation; transient failures retry the whole session."""
        async with self.locks.hold(self.config.mailbox_key, timeout=self.timeout):
            return await self.backoff.run(
                lambda: self._in_thread(self._session_sync, work, *args, context=context),
                is_retryable=lambda e: isinstance(e, TransientProviderError),
                operation_name=f"{context} {self.config.host}",
            )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _select_uids(self, client: IMAPClient, cursor: int, limit: int, full_sync: bool) -> Tuple[List[int], Optional[int]]:
        select_info = client.select_folder(self.config.folder, readonly=True)
        uid_validity = select_info.get(b'UIDVALIDITY') if select_info else None

        if full_sync:
            uids = sorted(client.search(['ALL']))[:limit]
        elif cursor > 0:
            # Servers return the highest UID for "N:*" even when it is < N
            found = client.search(['UID', f'{cursor + 1}:*'])
            uids = sorted(uid for uid in found if uid > cursor)[:limit]
        else:
            uids = sorted(client.search(['ALL']))[-limit:] if limit else []

        return uids, int(uid_validity) if uid_validity is not None else None

    def _to_raw_message(self, uid: int, data: Dict) -> RawMessage:
        envelope = data.get(b'ENVELOPE')
        flags = split_labels(data.get(b'FLAGS', ()))

        from_name, from_address = _envelope_address(envelope.from_ if envelope else None)
        _, to_address = _envelope_address(envelope.to if envelope else None)

        message_id = None
        if envelope and envelope.message_id:
            message_id = envelope.message_id.decode('utf-8', errors='replace').strip()
        if not message_id:
            message_id = f"{uid}@{self.config.host}"

        received_at = data.get(b'INTERNALDATE') or (envelope.date if envelope else None)
        if isinstance(received_at, datetime) and received_at.tzinfo is not None:
            received_at = received_at.astimezone(timezone.utc).replace(tzinfo=None)

        return RawMessage(
            provider_message_id=message_id,
            provider_uid=str(uid),
            from_address=from_address,
            from_name=from_name or None,
            to_address=to_address or None,
            subject=decode_mime_header(envelope.subject) if envelope and envelope.subject else None,
            received_at=received_at,
            list_unsubscribe=_parse_list_unsubscribe(data.get(LIST_UNSUBSCRIBE_FIELD)),
            labels=flags,
            is_read='\\Seen' in flags,
            is_starred='\\Flagged' in flags,
        )

    def _list_sync(self, client: IMAPClient, cursor: int, limit: int, full_sync: bool) -> FetchResult:
        uids, uid_validity = self._select_uids(client, cursor, limit, full_sync)
        if not uids:
            return FetchResult(messages=[], new_cursor=cursor, uid_validity=uid_validity)

        messages: List[RawMessage] = []
        for start in range(0, len(uids), self.header_batch_size):
            batch = uids[start:start + self.header_batch_size]
            response = client.fetch(batch, HEADER_FETCH_ITEMS)
            for uid in batch:
                data = response.get(uid)
                if data is None:
                    # Expunged between SEARCH and FETCH
                    continue
                messages.append(self._to_raw_message(uid, data))

        new_cursor = max([cursor] + [int(m.provider_uid) for m in messages])
        logger.debug(f"IMAP {self.config.mailbox_key}: {len(messages)} headers fetched, cursor candidate {new_cursor}")
        return FetchResult(messages=messages, new_cursor=new_cursor, uid_validity=uid_validity)

    async def list_new_messages(self, cursor: int, limit: int, full_sync: bool = False) -> FetchResult:
        return await self._run(self._list_sync, cursor, limit, full_sync, context="IMAP list")

    # ------------------------------------------------------------------
    # Single-message operations
    # ------------------------------------------------------------------

    def _fetch_body_sync(self, client: IMAPClient, ref: MessageRef) -> BodyContent:
        client.select_folder(ref.folder or self.config.folder, readonly=True)
        uid = int(ref.provider_uid)
        response = client.fetch([uid], ['BODY.PEEK[]'])
        data = response.get(uid)
        if not data or b'BODY[]' not in data:
            raise ProviderProtocolError(f"Message UID {uid} not found in {ref.folder}")
        return parse_rfc822_body(data[b'BODY[]'])

    async def fetch_body(self, ref: MessageRef) -> BodyContent:
        return await self._run(self._fetch_body_sync, ref, context="IMAP fetch body")

    def _mark_read_sync(self, client: IMAPClient, ref: MessageRef):
        client.select_folder(ref.folder or self.config.folder)
        client.add_flags([int(ref.provider_uid)], [SEEN])

    def _move_sync(self, client: IMAPClient, ref: MessageRef, destination: str):
        client.select_folder(ref.folder or self.config.folder)
        client.move([int(ref.provider_uid)], destination)

    async def mark_read(self, ref: MessageRef) -> None:
        await self._run(self._mark_read_sync, ref, context="IMAP mark read")

    async def archive(self, ref: MessageRef) -> None:
        await self._run(self._move_sync, ref, self.config.archive_folder, context="IMAP archive")

    async def trash(self, ref: MessageRef) -> None:
        await self._run(self._move_sync, ref, self.config.trash_folder, context="IMAP trash")
