"""
Sync Coordinator

Per-account state machine driving one Provider Adapter:

    idle -> connecting -> fetching -> persisting -> idle | backoff | disabled

- connecting: decrypt credentials, refresh expired OAuth tokens (single-flight)
- fetching:   adapter.list_new_messages(cursor, limit)
- persisting: insert-ignore new rows and advance the cursor in ONE transaction,
              so the cursor only moves past a batch that was durably written

Transient failures end in `backoff` (picked up by the next trigger, never
looped here); unrecoverable auth failures end in `disabled` and deactivate
the account. Multi-account runs use a bounded worker pool and a wall-clock
budget.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError

from mailsift.core.credentials import CredentialVault, SingleFlight, TokenRefresher, TokenSet, is_token_expired
from mailsift.core.database import AccountRepository, EmailRepository, Store, utcnow
from mailsift.core.errors import (
    CredentialError,
    MailsiftError,
    PermanentAuthError,
    PersistenceError,
    ProviderError,
    ProviderProtocolError,
    TokenExpiredError,
    TransientProviderError,
)
from mailsift.core.providers import AdapterFactory, FetchResult, ProviderAdapter

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    BACKOFF = "backoff"
    DISABLED = "disabled"


@dataclass
class AccountView:
    """Detached copy of the SourceAccount fields one run needs."""
    id: uuid.UUID
    user_id: str
    email_address: str
    provider: str
    auth_type: str
    imap_host: Optional[str]
    imap_port: Optional[int]
    imap_use_ssl: Optional[bool]
    folder: str
    credentials: str
    is_active: bool
    last_sync_at: Optional[datetime]

    @classmethod
    def from_row(cls, account) -> "AccountView":
        return cls(
            id=account.id,
            user_id=account.user_id,
            email_address=account.email_address,
            provider=account.provider,
            auth_type=account.auth_type,
            imap_host=account.imap_host,
            imap_port=account.imap_port,
            imap_use_ssl=account.imap_use_ssl,
            folder=account.folder,
            credentials=account.credentials,
            is_active=account.is_active,
            last_sync_at=account.last_sync_at,
        )

    @property
    def uses_oauth(self) -> bool:
        return self.provider == "gmail" or self.auth_type == "oauth2"


@dataclass
class AccountSyncResult:
    account_id: str
    state: SyncState = SyncState.IDLE
    synced: int = 0
    errors: List[str] = field(default_factory=list)
    cursor: Optional[int] = None
    skipped: bool = False
    new_email_ids: List[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'account_id': self.account_id,
            'state': self.state.value,
            'synced': self.synced,
            'errors': list(self.errors),
            'cursor': self.cursor,
            'skipped': self.skipped,
        }


@dataclass
class SyncAllResult:
    synced: int = 0
    per_account: List[AccountSyncResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def new_email_ids(self) -> List[uuid.UUID]:
        return [email_id for result in self.per_account for email_id in result.new_email_ids]

    def to_dict(self) -> Dict:
        return {
            'synced': self.synced,
            'per_account': [r.to_dict() for r in self.per_account],
            'errors': list(self.errors),
            'skipped': self.skipped,
        }


class SyncCoordinator:
    """Runs the per-account sync state machine."""

    def __init__(self,
                 store: Store,
                 vault: CredentialVault,
                 adapter_factory: AdapterFactory,
                 refreshers: Optional[Dict[str, TokenRefresher]] = None,
                 default_limit: int = 30,
                 max_limit: int = 50,
                 recent_window_seconds: int = 30,
                 account_budget_seconds: float = 45.0,
                 run_budget_seconds: float = 55.0,
                 max_workers: int = 3,
                 max_errors: int = 3,
                 token_refresh_buffer_seconds: int = 60,
                 single_flight: Optional[SingleFlight] = None,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            store: Database handle
            vault: Credential vault for the account blobs
            adapter_factory: Builds the Provider Adapter for an account
            refreshers: Token refresher per provider kind ("gmail", "imap")
            clock: Returns naive UTC now (injected in tests)
        """
        self.store = store
        self.vault = vault
        self.adapter_factory = adapter_factory
        self.refreshers = refreshers or {}
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.recent_window = timedelta(seconds=recent_window_seconds)
        self.account_budget_seconds = account_budget_seconds
        self.run_budget_seconds = run_budget_seconds
        self.max_workers = max(1, max_workers)
        self.max_errors = max_errors
        self.token_refresh_buffer_seconds = token_refresh_buffer_seconds
        self.single_flight = single_flight or SingleFlight()
        self.clock = clock
        self._running: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings, store: Store, vault: CredentialVault,
                      adapter_factory: AdapterFactory,
                      refreshers: Optional[Dict[str, TokenRefresher]] = None) -> "SyncCoordinator":
        return cls(
            store=store,
            vault=vault,
            adapter_factory=adapter_factory,
            refreshers=refreshers,
            default_limit=settings.sync_default_limit,
            max_limit=settings.sync_max_limit,
            recent_window_seconds=settings.sync_recent_window_seconds,
            account_budget_seconds=settings.sync_account_budget_seconds,
            run_budget_seconds=settings.sync_run_budget_seconds,
            max_workers=settings.sync_max_workers,
            max_errors=settings.sync_max_errors,
            token_refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit:
            return min(self.default_limit, self.max_limit)
        return max(1, min(int(limit), self.max_limit))

    def _transition(self, account: AccountView, result: AccountSyncResult, state: SyncState):
        logger.debug(f"Account {account.id}: {result.state.value} -> {state.value}")
        result.state = state

    def _recently_synced(self, account: AccountView) -> bool:
        if account.last_sync_at is None:
            return False
        return self.clock() - account.last_sync_at < self.recent_window

    def _load_account(self, account_id) -> AccountView:
        with self.store.session() as db:
            return AccountView.from_row(AccountRepository(db).get(account_id))

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def _refresh_credentials(self, account: AccountView, credentials: Dict) -> Dict:
        """Single-flight refresh; persists the new token set through the vault."""
        refresher = self.refreshers.get(account.provider)
        if refresher is None:
            raise CredentialError(f"No token refresher configured for provider '{account.provider}'")

        async def refresh() -> Dict:
            logger.info(f"Refreshing access token for account {account.id}")
            token_set: TokenSet = await refresher.refresh(credentials.get('refresh_token'))
            updated = token_set.merge_into(credentials)
            with self.store.session() as db:
                AccountRepository(db).update_credentials(account.id, self.vault.encrypt(updated))
            return updated

        return await self.single_flight.do(str(account.id), refresh)

    async def resolve_credentials(self, account: AccountView) -> Dict:
        """Decrypted credentials with a fresh access token where the account uses OAuth."""
        credentials = self.vault.decrypt(account.credentials)
        if account.uses_oauth and is_token_expired(credentials.get('expires_at'),
                                                   self.token_refresh_buffer_seconds):
            credentials = await self._refresh_credentials(account, credentials)
        return credentials

    async def _fetch(self, account: AccountView, credentials: Dict, cursor: int,
                     limit: int, full_sync: bool) -> FetchResult:
        """Fetch with exactly one refresh-and-retry on an expired token."""
        adapter: ProviderAdapter = self.adapter_factory.build(account, credentials)
        try:
            return await adapter.list_new_messages(cursor, limit, full_sync=full_sync)
        except TokenExpiredError as first:
            if not account.uses_oauth:
                raise PermanentAuthError(str(first), cause=first) from first
            logger.info(f"Access token rejected for account {account.id}, refreshing once")
        finally:
            await adapter.close()

        credentials = await self._refresh_credentials(account, credentials)
        adapter = self.adapter_factory.build(account, credentials)
        try:
            return await adapter.list_new_messages(cursor, limit, full_sync=full_sync)
        except TokenExpiredError as second:
            raise PermanentAuthError(f"Access token rejected after refresh: {second}", cause=second) from second
        finally:
            await adapter.close()

    # ------------------------------------------------------------------
    # Single account
    # ------------------------------------------------------------------

    async def _run(self, account: AccountView, limit: int, full_sync: bool, result: AccountSyncResult):
        self._transition(account, result, SyncState.CONNECTING)
        credentials = await self.resolve_credentials(account)

        with self.store.session() as db:
            cursor_row = AccountRepository(db).get_cursor(account.id)
            cursor, known_validity = cursor_row.position, cursor_row.uid_validity
        result.cursor = cursor

        self._transition(account, result, SyncState.FETCHING)
        fetched = await self._fetch(account, credentials, cursor, limit, full_sync)

        self._transition(account, result, SyncState.PERSISTING)
        validity_changed = (known_validity is not None and fetched.uid_validity is not None
                            and fetched.uid_validity != known_validity)
        try:
            with self.store.session() as db:
                accounts = AccountRepository(db)
                inserted = EmailRepository(db).insert_new(account.user_id, account.id, fetched.messages)
                result.cursor = accounts.advance_cursor(account.id, fetched.new_cursor, fetched.uid_validity)
                accounts.record_success(account.id, len(inserted))
                if validity_changed:
                    message = (f"Mailbox UIDVALIDITY changed ({known_validity} -> {fetched.uid_validity}); "
                               f"run a full sync to pick up renumbered messages")
                    logger.warning(f"Account {account.id}: {message}")
                    accounts.record_error(account.id, message)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist batch: {type(e).__name__}") from e

        result.synced = len(inserted)
        result.new_email_ids = inserted
        self._transition(account, result, SyncState.IDLE)

    def _record_failure(self, account: AccountView, result: AccountSyncResult, error: BaseException):
        message = str(error) or type(error).__name__
        result.errors.append(message)
        with self.store.session() as db:
            accounts = AccountRepository(db)
            if isinstance(error, PermanentAuthError):
                self._transition(account, result, SyncState.DISABLED)
                accounts.disable(account.id, f"Authentication failed, please reconnect this account: {message}")
            else:
                self._transition(account, result, SyncState.BACKOFF)
                accounts.record_error(account.id, message)

    async def sync_account(self, account_id, limit: Optional[int] = None, full_sync: bool = False,
                           budget_seconds: Optional[float] = None) -> AccountSyncResult:
        """
        Run the state machine once for one account.

        Args:
            account_id: SourceAccount id
            limit: Requested message limit (clamped to [1, max_limit])
            full_sync: Ignore the cursor and the recently-synced guard
            budget_seconds: Wall-clock ceiling (defaults to the account budget)

        Returns:
            AccountSyncResult; failures are reported in it, never raised

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        limit = self.clamp_limit(limit)
        account = self._load_account(account_id)
        result = AccountSyncResult(account_id=str(account.id))

        if not account.is_active:
            result.state = SyncState.DISABLED
            result.skipped = True
            result.errors.append("Account is inactive; re-authenticate to resume sync")
            return result

        if not full_sync and self._recently_synced(account):
            logger.info(f"Skipping account {account.id}: synced less than "
                        f"{int(self.recent_window.total_seconds())}s ago")
            result.skipped = True
            return result

        key = str(account.id)
        lock = self._running.setdefault(key, asyncio.Lock())
        if lock.locked():
            logger.info(f"Skipping account {account.id}: a sync is already running")
            result.skipped = True
            return result

        budget = budget_seconds if budget_seconds is not None else self.account_budget_seconds
        try:
            async with lock:
                try:
                    await asyncio.wait_for(self._run(account, limit, full_sync, result), timeout=budget)
                except asyncio.TimeoutError:
                    self._record_failure(account, result,
                                         TransientProviderError(f"Sync exceeded {budget:.0f}s budget"))
                except (ProviderError, PersistenceError, CredentialError) as e:
                    self._record_failure(account, result, e)
                except Exception as e:
                    logger.exception(f"Unexpected error syncing account {account.id}")
                    self._record_failure(account, result, ProviderProtocolError(
                        f"Unexpected {type(e).__name__}: {e}", cause=e))
        finally:
            if self._running.get(key) is lock:
                del self._running[key]

        if result.state == SyncState.IDLE:
            logger.info(f"Account {account.email_address}: synced {result.synced} new emails "
                        f"(cursor {result.cursor})")
        return result

    # ------------------------------------------------------------------
    # All accounts of a user
    # ------------------------------------------------------------------

    async def sync_user(self, user_id: str, limit: Optional[int] = None,
                        full_sync: bool = False) -> SyncAllResult:
        """
        Sync every active account of a user with bounded concurrency.

        One failing account never aborts the others; errors are prefixed
        with the account address and truncated to max_errors.
        """
        with self.store.session() as db:
            accounts = [AccountView.from_row(a) for a in AccountRepository(db).list_for_user(user_id)]

        summary = SyncAllResult()
        if not accounts:
            logger.info(f"No active accounts for user {user_id}")
            return summary

        if not full_sync and all(self._recently_synced(a) for a in accounts):
            logger.info(f"Skipping sync for user {user_id}: all accounts synced recently")
            summary.skipped = True
            return summary

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.run_budget_seconds
        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(account: AccountView) -> AccountSyncResult:
            async with semaphore:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    skipped = AccountSyncResult(account_id=str(account.id), skipped=True)
                    skipped.errors.append("Run budget exhausted before this account started")
                    return skipped
                try:
                    return await self.sync_account(account.id, limit, full_sync,
                                                   budget_seconds=min(self.account_budget_seconds, remaining))
                except Exception as e:
                    if not isinstance(e, MailsiftError):
                        logger.exception(f"Unexpected error syncing account {account.id}")
                    failed = AccountSyncResult(account_id=str(account.id), state=SyncState.BACKOFF)
                    failed.errors.append(str(e) or type(e).__name__)
                    return failed

        results = await asyncio.gather(*(worker(a) for a in accounts))

        by_id = {str(a.id): a for a in accounts}
        all_errors: List[str] = []
        for account_result in results:
            summary.per_account.append(account_result)
            summary.synced += account_result.synced
            address = by_id[account_result.account_id].email_address
            all_errors.extend(f"{address}: {err}" for err in account_result.errors)

        summary.errors = all_errors[:self.max_errors]
        logger.info(f"User {user_id}: synced {summary.synced} emails across {len(accounts)} accounts "
                    f"({len(all_errors)} errors)")
        return summary
