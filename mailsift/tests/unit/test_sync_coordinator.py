"""
Unit tests for the sync coordinator state machine.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.exc import OperationalError

from mailsift.core.credentials import CredentialVault, TokenRefresher, TokenSet
from mailsift.core.database import AccountRepository, EmailRepository
from mailsift.core.errors import (
    AccountNotFoundError,
    PermanentAuthError,
    TokenExpiredError,
    TransientProviderError,
)
from mailsift.core.sync import SyncCoordinator, SyncState


class FakeRefresher(TokenRefresher):
    def __init__(self, error: Exception = None):
        self.calls = []
        self.error = error

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.calls.append(refresh_token)
        if self.error:
            raise self.error
        return TokenSet(access_token=f"fresh-{len(self.calls)}", expires_at=4_102_444_800.0)


@pytest.fixture
def coordinator(store, vault, adapter_factory):
    return SyncCoordinator(store, vault, adapter_factory, recent_window_seconds=0)


def _account(store, account_id):
    with store.session() as db:
        account = AccountRepository(db).get(account_id)
        cursor = AccountRepository(db).get_cursor(account_id)
        return {
            'is_active': account.is_active,
            'last_error': account.last_error,
            'last_sync_at': account.last_sync_at,
            'credentials': account.credentials,
            'cursor': cursor.position,
            'emails': EmailRepository(db).count_for_account(account_id),
        }


class TestSyncAccount:
    """Test single-account sync"""

    @pytest.mark.asyncio
    async def test_new_message_advances_cursor(self, store, coordinator, adapter_factory, make_account):
        """Test cursor 100 with one new UID 101 syncs one email"""
        account_id = make_account(cursor=100)
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.add(100)
        mailbox.add(101)

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.IDLE
        assert result.synced == 1
        assert result.cursor == 101
        assert len(result.new_email_ids) == 1
        state = _account(store, account_id)
        assert state['cursor'] == 101
        assert state['emails'] == 1
        assert state['last_sync_at'] is not None

        again = await coordinator.sync_account(account_id)
        assert again.synced == 0
        assert _account(store, account_id)['cursor'] == 101

    @pytest.mark.asyncio
    async def test_full_sync_is_idempotent(self, store, coordinator, adapter_factory, make_account):
        """Test re-listing stored messages inserts nothing twice"""
        account_id = make_account()
        mailbox = adapter_factory.mailbox(account_id)
        for uid in (1, 2, 3):
            mailbox.add(uid)

        first = await coordinator.sync_account(account_id)
        second = await coordinator.sync_account(account_id, full_sync=True)

        assert first.synced == 3
        assert second.synced == 0
        assert _account(store, account_id)['emails'] == 3

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, coordinator, adapter_factory, make_account):
        """Test requested limit never exceeds max_limit"""
        account_id = make_account()
        mailbox = adapter_factory.mailbox(account_id)
        for uid in range(1, 61):
            mailbox.add(uid)

        result = await coordinator.sync_account(account_id, limit=500)

        assert result.synced == coordinator.max_limit
        assert coordinator.clamp_limit(0) == coordinator.default_limit
        assert coordinator.clamp_limit(-5) == 1

    @pytest.mark.asyncio
    async def test_permanent_auth_disables_account(self, store, coordinator, adapter_factory, make_account):
        """Test bad credentials disable the account"""
        account_id = make_account(cursor=5)
        adapter_factory.mailbox(account_id).list_errors.append(PermanentAuthError("AUTHENTICATIONFAILED"))

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.DISABLED
        state = _account(store, account_id)
        assert state['is_active'] is False
        assert "reconnect" in state['last_error']
        assert state['cursor'] == 5

    @pytest.mark.asyncio
    async def test_transient_error_backs_off(self, store, coordinator, adapter_factory, make_account):
        """Test transient failures keep the account active and the cursor"""
        account_id = make_account(cursor=7)
        adapter_factory.mailbox(account_id).list_errors.append(TransientProviderError("connection reset"))

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.BACKOFF
        assert result.errors == ["connection reset"]
        state = _account(store, account_id)
        assert state['is_active'] is True
        assert state['last_error'] == "connection reset"
        assert state['cursor'] == 7

    @pytest.mark.asyncio
    async def test_inactive_account_skipped(self, store, coordinator, adapter_factory, make_account):
        """Test disabled accounts are not contacted"""
        account_id = make_account()
        with store.session() as db:
            AccountRepository(db).disable(account_id, "revoked")

        result = await coordinator.sync_account(account_id)

        assert result.skipped
        assert result.state == SyncState.DISABLED
        assert adapter_factory.built == []

    @pytest.mark.asyncio
    async def test_recently_synced_skipped(self, store, vault, adapter_factory, make_account):
        """Test a second run inside the recent window is skipped"""
        coordinator = SyncCoordinator(store, vault, adapter_factory, recent_window_seconds=30)
        account_id = make_account()
        adapter_factory.mailbox(account_id).add(1)

        await coordinator.sync_account(account_id)
        again = await coordinator.sync_account(account_id)
        forced = await coordinator.sync_account(account_id, full_sync=True)

        assert again.skipped
        assert not forced.skipped
        assert len(adapter_factory.built) == 2

    @pytest.mark.asyncio
    async def test_recent_window_uses_clock(self, store, vault, adapter_factory, make_account):
        """Test the guard expires once the window has passed"""
        now = {'value': datetime(2030, 1, 1, 12, 0, 0)}
        coordinator = SyncCoordinator(store, vault, adapter_factory, recent_window_seconds=30,
                                      clock=lambda: now['value'])
        account_id = make_account()
        with store.session() as db:
            account = AccountRepository(db).get(account_id)
            account.last_sync_at = now['value'] - timedelta(seconds=10)

        assert (await coordinator.sync_account(account_id)).skipped
        now['value'] += timedelta(seconds=60)
        assert not (await coordinator.sync_account(account_id)).skipped

    @pytest.mark.asyncio
    async def test_uid_validity_change_is_reported(self, store, coordinator, adapter_factory, make_account):
        """Test a UIDVALIDITY change keeps the cursor and records a warning"""
        account_id = make_account()
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.add(1)
        await coordinator.sync_account(account_id)

        mailbox.uid_validity = 2
        mailbox.add(2)
        result = await coordinator.sync_account(account_id)

        assert result.synced == 1
        assert "UIDVALIDITY" in _account(store, account_id)['last_error']

    @pytest.mark.asyncio
    async def test_unknown_account(self, coordinator):
        """Test unknown ids raise AccountNotFoundError"""
        with pytest.raises(AccountNotFoundError):
            await coordinator.sync_account("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_adapter_closed(self, coordinator, adapter_factory, make_account):
        """Test adapters are closed after use"""
        account_id = make_account()
        await coordinator.sync_account(account_id)
        assert all(adapter.closed for adapter in adapter_factory.built)

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off(self, store, coordinator, adapter_factory, make_account):
        """Test an unexpected adapter exception ends in backoff instead of escaping"""
        account_id = make_account(cursor=3)
        adapter_factory.mailbox(account_id).list_errors.append(ValueError("Incorrect padding"))

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.BACKOFF
        assert result.errors == ["Unexpected ValueError: Incorrect padding"]
        state = _account(store, account_id)
        assert state['is_active'] is True
        assert state['cursor'] == 3

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_cursor_and_rows(self, store, coordinator, adapter_factory,
                                                             make_account, monkeypatch):
        """Test a failed write rolls back the whole batch and a retry picks it up"""
        account_id = make_account(cursor=0)
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.add(1)
        mailbox.add(2)

        def failing_advance(self, *args, **kwargs):
            raise OperationalError("UPDATE sync_cursors", {}, Exception("disk I/O error"))

        monkeypatch.setattr(AccountRepository, "advance_cursor", failing_advance)
        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.BACKOFF
        assert result.synced == 0
        state = _account(store, account_id)
        assert state['cursor'] == 0
        assert state['emails'] == 0
        assert "persist" in state['last_error']

        monkeypatch.undo()
        retry = await coordinator.sync_account(account_id)

        assert retry.synced == 2
        assert _account(store, account_id)['cursor'] == 2

    @pytest.mark.asyncio
    async def test_running_sync_skips_second_call(self, coordinator, adapter_factory, make_account):
        """Test a run for an account that is already syncing is skipped"""
        account_id = make_account()
        adapter_factory.mailbox(account_id).add(1)
        lock = coordinator._running.setdefault(str(account_id), asyncio.Lock())

        async with lock:
            result = await coordinator.sync_account(account_id)

        assert result.skipped
        assert result.synced == 0
        assert adapter_factory.built == []

    @pytest.mark.asyncio
    async def test_run_locks_released(self, coordinator, adapter_factory, make_account):
        """Test finished runs leave no per-account lock behind"""
        healthy = make_account(email_address="a@company.com")
        failing = make_account(email_address="b@company.com")
        adapter_factory.mailbox(healthy).add(1)
        adapter_factory.mailbox(failing).list_errors.append(TransientProviderError("timeout"))

        await coordinator.sync_account(healthy)
        await coordinator.sync_account(failing)

        assert coordinator._running == {}


class TestTokenRefresh:
    """Test OAuth refresh during sync"""

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, store, vault, adapter_factory, make_account):
        """Test a 401 triggers one refresh and one retry"""
        refresher = FakeRefresher()
        coordinator = SyncCoordinator(store, vault, adapter_factory, refreshers={'gmail': refresher},
                                      recent_window_seconds=0)
        account_id = make_account(provider="gmail", email_address="me@gmail.com", credentials={
            'access_token': 'stale', 'refresh_token': 'r1', 'expires_at': 4_102_444_800.0,
        })
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.add(1)
        mailbox.list_errors.append(TokenExpiredError("HTTP 401"))

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.IDLE
        assert result.synced == 1
        assert refresher.calls == ['r1']
        assert adapter_factory.built[-1].credentials['access_token'] == 'fresh-1'
        stored = vault.decrypt(_account(store, account_id)['credentials'])
        assert stored['access_token'] == 'fresh-1'
        assert stored['refresh_token'] == 'r1'

    @pytest.mark.asyncio
    async def test_second_401_disables(self, store, vault, adapter_factory, make_account):
        """Test a token rejected after refresh is a permanent failure"""
        coordinator = SyncCoordinator(store, vault, adapter_factory, refreshers={'gmail': FakeRefresher()},
                                      recent_window_seconds=0)
        account_id = make_account(provider="gmail", email_address="me@gmail.com", credentials={
            'access_token': 'stale', 'refresh_token': 'r1', 'expires_at': 4_102_444_800.0,
        })
        adapter_factory.mailbox(account_id).list_errors.extend([TokenExpiredError("401"), TokenExpiredError("401")])

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.DISABLED
        assert _account(store, account_id)['is_active'] is False

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_fetch(self, store, vault, adapter_factory, make_account):
        """Test tokens past expires_at are refreshed before connecting"""
        refresher = FakeRefresher()
        coordinator = SyncCoordinator(store, vault, adapter_factory, refreshers={'gmail': refresher},
                                      recent_window_seconds=0)
        account_id = make_account(provider="gmail", email_address="me@gmail.com", credentials={
            'access_token': 'old', 'refresh_token': 'r1', 'expires_at': 1.0,
        })

        await coordinator.sync_account(account_id)

        assert refresher.calls == ['r1']
        assert adapter_factory.built[0].credentials['access_token'] == 'fresh-1'

    @pytest.mark.asyncio
    async def test_revoked_refresh_disables(self, store, vault, adapter_factory, make_account):
        """Test invalid_grant during refresh disables the account"""
        coordinator = SyncCoordinator(store, vault, adapter_factory,
                                      refreshers={'gmail': FakeRefresher(PermanentAuthError("invalid_grant"))},
                                      recent_window_seconds=0)
        account_id = make_account(provider="gmail", email_address="me@gmail.com", credentials={
            'access_token': 'old', 'refresh_token': 'r1', 'expires_at': 1.0,
        })

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.DISABLED
        assert adapter_factory.built == []

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, store, adapter_factory, make_account):
        """Test a vault key mismatch backs off without disabling"""
        account_id = make_account()
        other_vault = CredentialVault(Fernet.generate_key().decode())
        coordinator = SyncCoordinator(store, other_vault, adapter_factory, recent_window_seconds=0)

        result = await coordinator.sync_account(account_id)

        assert result.state == SyncState.BACKOFF
        assert _account(store, account_id)['is_active'] is True


class TestSyncUser:
    """Test multi-account runs"""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_others(self, coordinator, adapter_factory, make_account):
        """Test healthy accounts sync while one fails"""
        good = make_account(email_address="good@company.com")
        bad = make_account(email_address="bad@company.com")
        adapter_factory.mailbox(good).add(1)
        adapter_factory.mailbox(bad).list_errors.append(TransientProviderError("timeout"))

        summary = await coordinator.sync_user("user-1")

        assert summary.synced == 1
        assert len(summary.per_account) == 2
        assert summary.errors == ["bad@company.com: timeout"]

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_others(self, coordinator, adapter_factory, make_account):
        """Test an unexpected exception in one account is reported, not raised"""
        good = make_account(email_address="good@company.com")
        bad = make_account(email_address="bad@company.com")
        adapter_factory.mailbox(good).add(1)
        adapter_factory.mailbox(bad).list_errors.append(KeyError("id"))

        summary = await coordinator.sync_user("user-1")

        assert summary.synced == 1
        assert summary.errors == ["bad@company.com: Unexpected KeyError: 'id'"]

    @pytest.mark.asyncio
    async def test_errors_truncated(self, store, vault, adapter_factory, make_account):
        """Test error list is capped at max_errors"""
        coordinator = SyncCoordinator(store, vault, adapter_factory, recent_window_seconds=0, max_errors=2)
        for i in range(4):
            account_id = make_account(email_address=f"a{i}@company.com")
            adapter_factory.mailbox(account_id).list_errors.append(TransientProviderError(f"boom {i}"))

        summary = await coordinator.sync_user("user-1")

        assert len(summary.per_account) == 4
        assert len(summary.errors) == 2

    @pytest.mark.asyncio
    async def test_no_accounts(self, coordinator):
        """Test a user without accounts gets an empty summary"""
        summary = await coordinator.sync_user("nobody")
        assert summary.synced == 0
        assert summary.per_account == []

    @pytest.mark.asyncio
    async def test_other_users_untouched(self, coordinator, adapter_factory, make_account):
        """Test only the requested user's accounts are synced"""
        mine = make_account(user_id="user-1")
        theirs = make_account(user_id="user-2", email_address="other@company.com")
        adapter_factory.mailbox(mine).add(1)
        adapter_factory.mailbox(theirs).add(1)

        summary = await coordinator.sync_user("user-1")

        assert [r.account_id for r in summary.per_account] == [str(mine)]
