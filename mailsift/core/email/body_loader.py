"""
Lazy body materialization.

Bodies are not downloaded at sync time (IMAP only fetches headers). The
first read fetches the body through the account's adapter and stores it
permanently; later reads come from the database.
"""
from typing import Awaitable, Callable, Dict
import logging

from mailsift.core.database import AccountRepository, EmailRepository, Store
from mailsift.core.errors import CredentialError, ProviderError
from mailsift.core.providers import AdapterFactory, BodyContent, MessageRef
from mailsift.core.sync.coordinator import AccountView

logger = logging.getLogger(__name__)


class BodyLoader:
    """Fetch-on-first-read cache for message bodies."""

    def __init__(self,
                 store: Store,
                 adapter_factory: AdapterFactory,
                 resolve_credentials: Callable[[AccountView], Awaitable[Dict]]):
        """
        Args:
            store: Database handle
            adapter_factory: Builds the adapter for the owning account
            resolve_credentials: Returns decrypted, refreshed credentials
                (SyncCoordinator.resolve_credentials)
        """
        self.store = store
        self.adapter_factory = adapter_factory
        self.resolve_credentials = resolve_credentials

    async def get_body(self, email_id) -> BodyContent:
        """
        Return the body, fetching it once if needed.

        A failed fetch returns an empty body and leaves body_fetched False
        so the next access retries.

        Raises:
            EmailNotFoundError: Unknown email id
        """
        with self.store.session() as db:
            email = EmailRepository(db).get(email_id)
            if email.body_fetched:
                return BodyContent(text=email.body_text or "", html=email.body_html or "")
            account = AccountView.from_row(AccountRepository(db).get(email.account_id))
            ref = MessageRef(
                provider_uid=email.provider_uid or email.provider_message_id,
                provider_message_id=email.provider_message_id,
                folder=account.folder or "INBOX",
            )
            email_key = email.id

        try:
            credentials = await self.resolve_credentials(account)
            adapter = self.adapter_factory.build(account, credentials)
        except (ProviderError, CredentialError) as e:
            logger.warning(f"Cannot load body for email {email_key}: {e}")
            return BodyContent()

        try:
            body = (await adapter.fetch_body(ref)).truncated()
        except ProviderError as e:
            logger.warning(f"Body fetch failed for email {email_key} ({type(e).__name__}): {e}")
            return BodyContent()
        finally:
            await adapter.close()

        with self.store.session() as db:
            EmailRepository(db).store_body(email_key, body)
        logger.debug(f"Stored body for email {email_key} ({len(body.text)} text chars)")
        return body
