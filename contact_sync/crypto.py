"""
Credential secret encryption.

Classifier API keys are stored Fernet-encrypted; the key pool decrypts a
secret only when handing it to a call.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialDecryptionError

logger = logging.getLogger(__name__)


class CredentialCipher:
    """Encrypt and decrypt credential secrets with a Fernet key."""

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise CredentialDecryptionError(f"Invalid encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, secret: str) -> str:
        if not secret or not isinstance(secret, str):
            raise CredentialDecryptionError("Secret must be a non-empty string")
        return self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted: str) -> str:
        if not encrypted:
            raise CredentialDecryptionError("Encrypted secret is empty")
        try:
            return self._fernet.decrypt(encrypted.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialDecryptionError("Invalid or corrupted secret") from e


def cipher_from_key(key: Optional[str]) -> Optional[CredentialCipher]:
    """Build a cipher, or None when no key is configured.

    Without a cipher the store is assumed to hold plaintext secrets, which
    is only acceptable for local development.
    """
    if not key:
        logger.warning("CREDENTIAL_ENCRYPTION_KEY not set; stored classifier keys are read as plaintext")
        return None
    return CredentialCipher(key)
