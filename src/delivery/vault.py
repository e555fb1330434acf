"""
AES-256-GCM encryption for tenant signing secrets at rest.

Ciphertext layout: 12-byte random nonce followed by the GCM ciphertext and tag.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


_NONCE_LENGTH = 12
_REQUIRED_KEY_LENGTH = 32


class CredentialDecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""


class CredentialVault:
    def __init__(self, key: bytes):
        if len(key) != _REQUIRED_KEY_LENGTH:
            raise ValueError(
                f"Encryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_base64_key(cls, encoded: str) -> "CredentialVault":
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except binascii.Error as exc:
            raise ValueError(f"Credential encryption key contains invalid base64: {exc}") from exc
        return cls(key)

    def encrypt(self, plaintext: str) -> bytes:
        nonce = os.urandom(_NONCE_LENGTH)
        return nonce + self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, encrypted: bytes) -> str:
        if len(encrypted) <= _NONCE_LENGTH:
            raise CredentialDecryptionError("Ciphertext too short")
        nonce, ciphertext = encrypted[:_NONCE_LENGTH], encrypted[_NONCE_LENGTH:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise CredentialDecryptionError("Failed to decrypt secret: authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialDecryptionError("Decrypted secret is not valid UTF-8") from exc
