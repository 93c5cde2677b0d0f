"""
Error taxonomy for the ingestion and classification pipeline.

Provider adapters catch raw protocol exceptions (imapclient, socket, ssl,
httpx) and re-raise them as one of the ProviderError subclasses below.
Nothing above the adapter boundary sees a raw protocol exception.
"""
from typing import Optional


class MailsiftError(Exception):
    """Base class for all pipeline errors."""


# ---------------------------------------------------------------------------
# Provider errors (raised by adapters and token refreshers)
# ---------------------------------------------------------------------------

class ProviderError(MailsiftError):
    """Base for errors surfaced by a Provider Adapter."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class TransientProviderError(ProviderError):
    """Network timeout, rate limit, temporary 5xx. Retried on the next run."""


class TokenExpiredError(ProviderError):
    """Access token rejected. The coordinator refreshes once and retries."""


class PermanentAuthError(ProviderError):
    """Revoked grant or bad credentials. The account gets disabled."""


class ProviderProtocolError(ProviderError):
    """Any other protocol failure (bad mailbox, unexpected response)."""


# ---------------------------------------------------------------------------
# Core errors
# ---------------------------------------------------------------------------

class PersistenceError(MailsiftError):
    """A batch could not be durably written."""


class AccountNotFoundError(MailsiftError):
    pass


class EmailNotFoundError(MailsiftError):
    pass


class CredentialError(MailsiftError):
    """The vault cannot decrypt a credential blob (wrong or missing key)."""


class ClassifierContractError(MailsiftError):
    """Classifier response was malformed or out of range."""


class BatchBudgetExceeded(MailsiftError):
    """A model call was cut off by the batch deadline; the email stays unclassified."""


# ---------------------------------------------------------------------------
# Exception classification
# ---------------------------------------------------------------------------

_PERMANENT_AUTH_PATTERNS = [
    'authenticationfailed',
    'authentication failed',
    'invalid credentials',
    'invalid_grant',
    'invalid_client',
    'unauthorized_client',
    'login failed',
    'auth failed',
    'application-specific password required',
    'web login required',
    'account disabled',
    'token has been expired or revoked',
]

_TRANSIENT_PATTERNS = [
    'timed out',
    'timeout',
    'connection reset',
    'connection refused',
    'connection aborted',
    'broken pipe',
    'network',
    'temporary',
    'temporarily',
    'unavailable',
    'eof',
    'too many',
    'rate limit',
    'try again',
    'throttl',
]


def is_permanent_auth_message(error: Optional[str]) -> bool:
    """Check if an error message indicates unrecoverable credentials."""
    if not error:
        return False
    error_lower = error.lower()
    return any(pattern in error_lower for pattern in _PERMANENT_AUTH_PATTERNS)


def is_transient_message(error: Optional[str]) -> bool:
    """Check if an error message indicates a retryable network condition."""
    if not error:
        return False
    error_lower = error.lower()
    return any(pattern in error_lower for pattern in _TRANSIENT_PATTERNS)


def classify_provider_exception(exc: BaseException, context: str = "") -> ProviderError:
    """
    Map a raw protocol exception onto the taxonomy.

    Args:
        exc: Exception raised by the protocol library
        context: Short operation name used in the message

    Returns:
        A ProviderError subclass instance wrapping exc
    """
    if isinstance(exc, ProviderError):
        return exc

    message = f"{context}: {exc}" if context else str(exc)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientProviderError(message, cause=exc)
    if is_permanent_auth_message(str(exc)):
        return PermanentAuthError(message, cause=exc)
    if is_transient_message(str(exc)):
        return TransientProviderError(message, cause=exc)
    return ProviderProtocolError(message, cause=exc)
