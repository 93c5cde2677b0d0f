"""Credential vault and OAuth2 token refresh"""
from .vault import CredentialVault
from .oauth2_provider import (
    TokenSet,
    TokenRefresher,
    GoogleTokenRefresher,
    MicrosoftTokenRefresher,
    SingleFlight,
    is_token_expired,
)

__all__ = [
    'CredentialVault',
    'TokenSet',
    'TokenRefresher',
    'GoogleTokenRefresher',
    'MicrosoftTokenRefresher',
    'SingleFlight',
    'is_token_expired',
]
