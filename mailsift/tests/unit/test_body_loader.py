"""
Unit tests for lazy body loading.
"""
import pytest

from mailsift.core.database import EmailRepository
from mailsift.core.email.body_loader import BodyLoader
from mailsift.core.errors import EmailNotFoundError, TransientProviderError
from mailsift.core.providers import BodyContent
from mailsift.core.sync import SyncCoordinator


@pytest.fixture
def loader(store, vault, adapter_factory):
    coordinator = SyncCoordinator(store, vault, adapter_factory)
    return BodyLoader(store, adapter_factory, coordinator.resolve_credentials)


class TestBodyLoader:
    """Test fetch-on-first-read"""

    @pytest.mark.asyncio
    async def test_first_read_fetches_and_stores(self, store, loader, adapter_factory, make_account, make_email):
        """Test the body is fetched once then served from the database"""
        account_id = make_account()
        email_id = make_email(account_id, uid=5, body_text=None, body_fetched=False)
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.bodies["5"] = BodyContent(text="Full text", html="<p>Full text</p>")

        first = await loader.get_body(email_id)
        second = await loader.get_body(email_id)

        assert first.text == "Full text"
        assert second.html == "<p>Full text</p>"
        assert mailbox.body_calls == 1
        with store.session() as db:
            assert EmailRepository(db).get(email_id).body_fetched is True

    @pytest.mark.asyncio
    async def test_already_fetched_body(self, loader, adapter_factory, make_account, make_email):
        """Test stored bodies never hit the provider"""
        account_id = make_account()
        email_id = make_email(account_id, body_text="Stored", body_fetched=True)

        body = await loader.get_body(email_id)

        assert body.text == "Stored"
        assert adapter_factory.built == []

    @pytest.mark.asyncio
    async def test_failed_fetch_retries_next_time(self, store, loader, adapter_factory, make_account, make_email):
        """Test a failure returns an empty body and is retried later"""
        account_id = make_account()
        email_id = make_email(account_id, uid=9, body_text=None, body_fetched=False)
        mailbox = adapter_factory.mailbox(account_id)
        mailbox.body_errors.append(TransientProviderError("timeout"))
        mailbox.bodies["9"] = BodyContent(text="Second try")

        failed = await loader.get_body(email_id)
        with store.session() as db:
            assert EmailRepository(db).get(email_id).body_fetched is False

        recovered = await loader.get_body(email_id)

        assert failed.text == ""
        assert recovered.text == "Second try"
        assert all(adapter.closed for adapter in adapter_factory.built)

    @pytest.mark.asyncio
    async def test_unknown_email(self, loader):
        """Test unknown ids raise EmailNotFoundError"""
        with pytest.raises(EmailNotFoundError):
            await loader.get_body("00000000-0000-0000-0000-000000000001")
