"""
Credential Vault

Encrypts per-account secrets (passwords, OAuth tokens) at rest.
Uses Fernet symmetric encryption (AES-128 in CBC mode with HMAC-SHA256).

KEY ROTATION SUPPORT:
- DB_ENCRYPTION_KEY: Primary key used for all NEW encryptions
- DB_ENCRYPTION_KEY_OLD: Comma-separated list of previous keys for decryption
  Example: DB_ENCRYPTION_KEY_OLD=oldkey1,oldkey2

Key rotation process:
1. Generate new key: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'
2. Move current DB_ENCRYPTION_KEY to DB_ENCRYPTION_KEY_OLD (prepend to list)
3. Set new key as DB_ENCRYPTION_KEY
4. Re-save accounts with CredentialVault.rotate()

The vault holds no state besides its keys; it is constructed once and
passed to the components that need it.
"""
import json
import logging
from typing import Any, Dict, Iterable, List

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from mailsift.core.errors import CredentialError

logger = logging.getLogger(__name__)


class CredentialVault:
    """Encrypt/decrypt credential dictionaries with key rotation support."""

    def __init__(self, primary_key: str, old_keys: Iterable[str] = ()):
        if not primary_key:
            raise CredentialError(
                "DB_ENCRYPTION_KEY is required. Generate a key with: "
                "python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )

        try:
            self._primary = Fernet(primary_key.encode('utf-8'))
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid primary encryption key: {e}") from e

        # MultiFernet encrypts with the first key, decrypts with any
        ciphers: List[Fernet] = [self._primary]
        for i, old_key in enumerate(old_keys):
            try:
                ciphers.append(Fernet(old_key.encode('utf-8')))
            except (ValueError, TypeError) as e:
                raise CredentialError(f"Invalid old encryption key at position {i + 1}") from e
        self._multi = MultiFernet(ciphers)

        if len(ciphers) > 1:
            logger.info(f"Credential vault initialized with {len(ciphers)} keys (1 primary + {len(ciphers) - 1} old)")

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        return cls(settings.db_encryption_key, settings.old_encryption_keys)

    def encrypt(self, secrets: Dict[str, Any]) -> str:
        """Serialize and encrypt a credential dictionary with the primary key."""
        payload = json.dumps(secrets, sort_keys=True).encode('utf-8')
        return self._primary.encrypt(payload).decode('utf-8')

    def decrypt(self, token: str) -> Dict[str, Any]:
        """
        Decrypt a credential blob produced by encrypt().

        Raises:
            CredentialError: If no configured key matches or the payload is not a JSON object
        """
        if not token:
            raise CredentialError("Empty credential blob")
        try:
            payload = self._multi.decrypt(token.encode('utf-8'))
        except InvalidToken as e:
            logger.error("Failed to decrypt credentials - no matching key found")
            raise CredentialError("Credentials encrypted with an unknown key") from e

        try:
            secrets = json.loads(payload.decode('utf-8'))
        except ValueError as e:
            raise CredentialError("Credential blob is not valid JSON") from e
        if not isinstance(secrets, dict):
            raise CredentialError("Credential blob is not a JSON object")
        return secrets

    def rotate(self, token: str) -> str:
        """Re-encrypt a blob under the primary key."""
        try:
            return self._multi.rotate(token.encode('utf-8')).decode('utf-8')
        except InvalidToken as e:
            raise CredentialError("Cannot rotate credentials encrypted with an unknown key") from e
