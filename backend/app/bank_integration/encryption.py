"""
Token Encryption Module

Provides encryption and decryption for stored bank credentials using
Fernet symmetric encryption. The key is supplied once at startup from
Settings.credential_encryption_key.
"""

import base64
import binascii
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import CredentialDecryptionError


class TokenEncryption:
    """
    Encrypt and decrypt credential payloads for storage in the database.

    Accepts either a ready Fernet key (44 url-safe base64 characters) or
    an arbitrary secret, which is stretched to 32 bytes with SHA-256.
    """

    def __init__(self, key: str):
        """
        Initialize encryption cipher.

        Args:
            key: Fernet key or passphrase. Must not be empty.

        Raises:
            ValueError: If key is empty
        """
        if not key:
            raise ValueError("Credential encryption key must be configured")
        self.cipher = Fernet(self._derive_key(key))

    @staticmethod
    def _derive_key(key: str) -> bytes:
        raw = key.encode()
        try:
            if len(base64.urlsafe_b64decode(raw)) == 32:
                return raw
        except (binascii.Error, ValueError):
            pass
        return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for database storage.

        Returns:
            Fernet token as text, suitable for a TEXT column
        """
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            CredentialDecryptionError: Wrong key or tampered data
        """
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode("utf-8")
        except (InvalidToken, AttributeError, UnicodeDecodeError) as e:
            raise CredentialDecryptionError(
                "Decryption failed: invalid token (wrong key or tampered data)"
            ) from e
