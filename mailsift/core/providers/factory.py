"""
Adapter construction: the single place that branches on an account's
protocol kind.
"""
from typing import Dict, Optional
import logging

import httpx

from mailsift.core.errors import CredentialError
from mailsift.core.retry_manager import BackoffPolicy
from .base import ProviderAdapter
from .gmail_adapter import GMAIL_API_BASE, GmailAdapter
from .imap_adapter import IMAPAdapter, IMAPConfig, MailboxLocks

logger = logging.getLogger(__name__)

PROVIDER_IMAP = "imap"
PROVIDER_GMAIL = "gmail"
SUPPORTED_PROVIDERS = (PROVIDER_IMAP, PROVIDER_GMAIL)


class AdapterFactory:
    """Builds a Provider Adapter for a SourceAccount and its decrypted credentials."""

    def __init__(self,
                 locks: Optional[MailboxLocks] = None,
                 backoff: Optional[BackoffPolicy] = None,
                 imap_timeout: int = 30,
                 header_batch_size: int = 50,
                 gmail_api_base: str = GMAIL_API_BASE,
                 gmail_timeout: float = 20.0,
                 gmail_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.locks = locks or MailboxLocks()
        self.backoff = backoff or BackoffPolicy()
        self.imap_timeout = imap_timeout
        self.header_batch_size = header_batch_size
        self.gmail_api_base = gmail_api_base
        self.gmail_timeout = gmail_timeout
        self.gmail_transport = gmail_transport

    @classmethod
    def from_settings(cls, settings, locks: Optional[MailboxLocks] = None) -> "AdapterFactory":
        return cls(
            locks=locks,
            backoff=BackoffPolicy.from_settings(settings),
            imap_timeout=settings.imap_timeout_seconds,
            header_batch_size=settings.sync_header_batch_size,
            gmail_api_base=settings.gmail_api_base,
            gmail_timeout=settings.gmail_timeout_seconds,
        )

    def build(self, account, credentials: Dict) -> ProviderAdapter:
        """
        Args:
            account: SourceAccount row
            credentials: Decrypted credential dict

        Raises:
            CredentialError: If required secrets are missing
            ValueError: If the provider kind is unknown
        """
        if account.provider == PROVIDER_GMAIL:
            token = credentials.get('access_token')
            if not token:
                raise CredentialError("Gmail account has no access token")
            return GmailAdapter(
                access_token=token,
                base_url=self.gmail_api_base,
                timeout=self.gmail_timeout,
                backoff=self.backoff,
                transport=self.gmail_transport,
            )

        if account.provider == PROVIDER_IMAP:
            config = IMAPConfig(
                host=account.imap_host,
                username=credentials.get('username') or account.email_address,
                port=account.imap_port or 993,
                use_ssl=account.imap_use_ssl if account.imap_use_ssl is not None else True,
                folder=account.folder or 'INBOX',
                auth_type=account.auth_type or 'password',
                password=credentials.get('password'),
                access_token=credentials.get('access_token'),
            )
            if config.auth_type == 'password' and not config.password:
                raise CredentialError("IMAP account has no password")
            return IMAPAdapter(
                config,
                locks=self.locks,
                backoff=self.backoff,
                timeout=self.imap_timeout,
                header_batch_size=self.header_batch_size,
            )

        raise ValueError(f"Unknown provider: {account.provider}. Use 'imap' or 'gmail'")
