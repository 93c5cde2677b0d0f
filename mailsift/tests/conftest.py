"""
Shared fixtures: in-memory SQLite store, test vault key, fake provider
adapters and a scripted classifier client.
"""
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

import pytest
from cryptography.fernet import Fernet

from mailsift.core.config import Settings
from mailsift.core.credentials import CredentialVault
from mailsift.core.database import AccountRepository, Email, Store, utcnow
from mailsift.core.providers import BodyContent, FetchResult, MessageRef, ProviderAdapter, RawMessage


class FakeMailbox:
    """Server-side state shared by every adapter built for one account."""

    def __init__(self):
        self.messages: Dict[int, RawMessage] = {}
        self.bodies: Dict[str, BodyContent] = {}
        self.uid_validity: Optional[int] = 1
        # Errors raised by the next list calls, in order
        self.list_errors: List[Exception] = []
        self.body_errors: List[Exception] = []
        self.list_calls = 0
        self.body_calls = 0

    def add(self, uid: int, **fields) -> RawMessage:
        defaults = {
            'provider_message_id': f"<msg-{uid}@example.com>",
            'provider_uid': str(uid),
            'from_address': "sender@example.com",
            'subject': f"Message {uid}",
            'received_at': datetime(2024, 1, 15, 10, 0),
        }
        defaults.update(fields)
        message = RawMessage(**defaults)
        self.messages[uid] = message
        return message


class FakeAdapter(ProviderAdapter):
    kind = "fake"

    def __init__(self, mailbox: FakeMailbox, credentials: Dict):
        self.mailbox = mailbox
        self.credentials = credentials
        self.closed = False

    async def list_new_messages(self, cursor: int, limit: int, full_sync: bool = False) -> FetchResult:
        self.mailbox.list_calls += 1
        if self.mailbox.list_errors:
            raise self.mailbox.list_errors.pop(0)
        uids = sorted(self.mailbox.messages)
        if not full_sync:
            uids = [uid for uid in uids if uid > cursor]
        uids = uids[:limit]
        return FetchResult(
            messages=[self.mailbox.messages[uid] for uid in uids],
            new_cursor=max([cursor] + uids),
            uid_validity=self.mailbox.uid_validity,
        )

    async def fetch_body(self, ref: MessageRef) -> BodyContent:
        self.mailbox.body_calls += 1
        if self.mailbox.body_errors:
            raise self.mailbox.body_errors.pop(0)
        return self.mailbox.bodies.get(ref.provider_uid, BodyContent())

    async def mark_read(self, ref: MessageRef) -> None:
        return None

    async def archive(self, ref: MessageRef) -> None:
        return None

    async def trash(self, ref: MessageRef) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


class FakeAdapterFactory:
    """Drop-in for AdapterFactory: one FakeMailbox per account id."""

    def __init__(self):
        self.mailboxes: Dict[str, FakeMailbox] = {}
        self.built: List[FakeAdapter] = []

    def mailbox(self, account_id) -> FakeMailbox:
        return self.mailboxes.setdefault(str(account_id), FakeMailbox())

    def build(self, account, credentials: Dict) -> FakeAdapter:
        adapter = FakeAdapter(self.mailbox(account.id), credentials)
        self.built.append(adapter)
        return adapter


class FakeClassifierClient:
    """Returns scripted answers; an Exception entry is raised instead."""

    def __init__(self, responses: Optional[List[Union[str, Exception]]] = None,
                 default: str = '{"priority": 3, "category": "work", "confidence": 0.8}'):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system: str, prompt: str) -> str:
        self.calls.append({'system': system, 'prompt': prompt})
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def encryption_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def settings(encryption_key) -> Settings:
    """Settings isolated from the environment and .env."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        db_encryption_key=encryption_key,
        openai_api_key=None,
        api_key="test-api-key",
        retry_max_attempts=1,
        retry_base_delay=0.0,
        classify_min_spacing_seconds=0.0,
    )


@pytest.fixture
def store():
    """In-memory SQLite store with all tables."""
    store = Store.from_url("sqlite://")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def vault(encryption_key) -> CredentialVault:
    return CredentialVault(encryption_key)


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def classifier_client() -> FakeClassifierClient:
    return FakeClassifierClient()


@pytest.fixture
def make_account(store, vault) -> Callable:
    """Create a source account; returns its id."""
    def _make(user_id: str = "user-1",
              email_address: str = "me@company.com",
              provider: str = "imap",
              credentials: Optional[Dict] = None,
              cursor: int = 0,
              **fields):
        credentials = credentials if credentials is not None else {'username': email_address, 'password': 'secret'}
        fields.setdefault('imap_host', 'imap.company.com' if provider == 'imap' else None)
        with store.session() as db:
            accounts = AccountRepository(db)
            account = accounts.create(user_id, email_address, provider, vault.encrypt(credentials), **fields)
            if cursor:
                accounts.advance_cursor(account.id, cursor)
            return account.id
    return _make


@pytest.fixture
def make_email(store) -> Callable:
    """Insert an Email row directly; returns its id."""
    def _make(account_id, user_id: str = "user-1", uid: int = 1, **fields):
        values = {
            'user_id': user_id,
            'account_id': account_id,
            'provider_message_id': f"<stored-{uid}@example.com>",
            'provider_uid': str(uid),
            'from_address': "sender@example.com",
            'subject': "Quarterly planning",
            'body_text': "Can we meet on Thursday to go over the plan?",
            'body_fetched': True,
            'received_at': utcnow(),
        }
        values.update(fields)
        with store.session() as db:
            email = Email(**values)
            db.add(email)
            db.flush()
            return email.id
    return _make
