"""
OAuth2 Token Refresh

Refreshes access tokens for token-based accounts:
- Google (Gmail REST API) via the standard refresh_token grant over httpx
- Microsoft 365 (IMAP XOAUTH2) via MSAL

Refreshes are single-flight per account: concurrent callers await the
same in-flight refresh instead of issuing duplicate refresh calls, which
could invalidate each other's tokens.
"""
import asyncio
from abc import ABC, abstractmethod
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
import msal

from mailsift.core.errors import PermanentAuthError, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class TokenSet:
    """OAuth token material as stored in the credential vault."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: float = 0.0  # epoch seconds

    @classmethod
    def from_credentials(cls, credentials: Dict) -> "TokenSet":
        return cls(
            access_token=credentials.get('access_token', ''),
            refresh_token=credentials.get('refresh_token'),
            expires_at=float(credentials.get('expires_at') or 0),
        )

    def merge_into(self, credentials: Dict) -> Dict:
        """Return credentials updated with this token set (keeps the old refresh token if none was rotated)."""
        updated = dict(credentials)
        updated['access_token'] = self.access_token
        updated['expires_at'] = self.expires_at
        if self.refresh_token:
            updated['refresh_token'] = self.refresh_token
        return updated


def is_token_expired(expires_at: Optional[float], buffer_seconds: int = 60, now: Optional[float] = None) -> bool:
    """A token is expired when it is missing or within buffer_seconds of expiry."""
    if not expires_at:
        return True
    now = time.time() if now is None else now
    return expires_at - now <= buffer_seconds


class TokenRefresher(ABC):
    """Exchange a refresh token for a fresh TokenSet."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Raises:
            PermanentAuthError: The refresh token was revoked or rejected
            TransientProviderError: The token endpoint could not be reached
        """


class GoogleTokenRefresher(TokenRefresher):
    """Refresh Google OAuth tokens through the token endpoint."""

    def __init__(self,
                 client_id: str,
                 client_secret: str,
                 token_url: str = "https://oauth2.googleapis.com/token",
                 timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport

    async def refresh(self, refresh_token: str) -> TokenSet:
        if not refresh_token:
            raise PermanentAuthError("No refresh token available")

        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.token_url, data=data)
        except httpx.TransportError as e:
            raise TransientProviderError(f"Token refresh failed: {e}", cause=e) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError:
            result = {}

        if response.status_code != 200:
            error = result.get('error', 'token_error')
            description = result.get('error_description', f"HTTP {response.status_code}")
            # 400 invalid_grant = revoked or expired refresh token
            raise PermanentAuthError(f"OAuth2 refresh rejected: {error} ({description})")

        if 'access_token' not in result:
            raise PermanentAuthError("OAuth2 refresh returned no access token")

        expires_in = int(result.get('expires_in', 3600))
        logger.info(f"Refreshed Google access token (expires in {expires_in}s)")
        return TokenSet(
            access_token=result['access_token'],
            refresh_token=result.get('refresh_token'),
            expires_at=time.time() + expires_in,
        )


class MicrosoftTokenRefresher(TokenRefresher):
    """Refresh Microsoft 365 tokens for IMAP XOAUTH2 using MSAL."""

    def __init__(self,
                 client_id: str,
                 client_secret: Optional[str] = None,
                 tenant_id: str = "common",
                 scopes: Optional[List[str]] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.scopes = scopes or ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
        self._msal_app = None

    def _get_msal_app(self):
        """Get or create MSAL application instance"""
        if self._msal_app is None:
            authority = f"https://login.microsoftonline.com/{self.tenant_id}"
            if self.client_secret:
                self._msal_app = msal.ConfidentialClientApplication(
                    client_id=self.client_id,
                    client_credential=self.client_secret,
                    authority=authority
                )
            else:
                self._msal_app = msal.PublicClientApplication(
                    client_id=self.client_id,
                    authority=authority
                )
        return self._msal_app

    def _acquire(self, refresh_token: str) -> dict:
        app = self._get_msal_app()
        return app.acquire_token_by_refresh_token(refresh_token, scopes=self.scopes) or {}

    async def refresh(self, refresh_token: str) -> TokenSet:
        if not refresh_token:
            raise PermanentAuthError("No refresh token available")

        try:
            result = await asyncio.to_thread(self._acquire, refresh_token)
        except (ConnectionError, TimeoutError) as e:
            raise TransientProviderError(f"Token refresh failed: {e}", cause=e) from e

        if 'error' in result or 'access_token' not in result:
            error_desc = result.get('error_description', result.get('error', 'Unknown error'))
            logger.error(f"OAuth2 token acquisition failed: {result.get('error', 'unknown')}")
            raise PermanentAuthError(f"OAuth2 authentication failed: {error_desc}")

        expires_in = int(result.get('expires_in', 3600))
        logger.info(f"Refreshed Microsoft access token (expires in {expires_in}s)")
        return TokenSet(
            access_token=result['access_token'],
            refresh_token=result.get('refresh_token'),
            expires_at=time.time() + expires_in,
        )


@dataclass
class SingleFlight:
    """
    Collapse concurrent calls for the same key into one in-flight task.

    Every caller awaiting a key while its task runs receives the same
    result (or the same exception). The slot is cleared once the task
    finishes, so a later call starts a new flight.
    """
    _inflight: Dict[str, asyncio.Task] = field(default_factory=dict)

    async def do(self, key: str, fn: Callable[[], Awaitable]):
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        # shield: one cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight
