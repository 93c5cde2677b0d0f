"""Provider adapters: one async contract over IMAP and the Gmail REST API"""
from .base import (
    ProviderAdapter,
    RawMessage,
    FetchResult,
    MessageRef,
    BodyContent,
)
from .imap_adapter import IMAPAdapter, IMAPConfig, MailboxLocks
from .gmail_adapter import GmailAdapter
from .factory import AdapterFactory, PROVIDER_IMAP, PROVIDER_GMAIL, SUPPORTED_PROVIDERS

__all__ = [
    'ProviderAdapter',
    'RawMessage',
    'FetchResult',
    'MessageRef',
    'BodyContent',
    'IMAPAdapter',
    'IMAPConfig',
    'MailboxLocks',
    'GmailAdapter',
    'AdapterFactory',
    'PROVIDER_IMAP',
    'PROVIDER_GMAIL',
    'SUPPORTED_PROVIDERS',
]
