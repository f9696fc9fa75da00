"""
Field-level encryption for personal data held in leads.

AES-256-GCM with a fresh 96-bit nonce per value. Ciphertext is stored as
``<nonce_b64>:<ciphertext_b64>``; the GCM tag travels inside the ciphertext
part, so tampering surfaces as a DecryptionError.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_BYTES = 32
NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    """The configured key is missing or not exactly 32 bytes."""


class DecryptionError(Exception):
    def __init__(self, message: str, kind: str = "BAD_FORMAT"):
        super().__init__(message)
        self.kind = kind


class FieldCipher:
    """Encrypts and decrypts individual string fields with one shared key."""

    def __init__(self, key: Union[str, bytes]):
        key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key or b"")
        if len(key_bytes) != KEY_BYTES:
            raise EncryptionKeyError(
                f"Encryption key must be exactly {KEY_BYTES} bytes, got {len(key_bytes)}. "
                "Set ENCRYPTION_KEY before starting the service."
            )
        self._aead = AESGCM(key_bytes)

    @classmethod
    def from_settings(cls, settings) -> "FieldCipher":
        return cls(settings.security.encryption_key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ct = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{_b64(nonce)}:{_b64(ct)}"

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or ciphertext.count(":") != 1:
            raise DecryptionError("Ciphertext must look like nonce:data")

        nonce_part, data_part = ciphertext.split(":")
        try:
            nonce = base64.b64decode(nonce_part, validate=True)
            data = base64.b64decode(data_part, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Ciphertext is not valid base64: {e}") from e

        if len(nonce) != NONCE_BYTES or not data:
            raise DecryptionError("Ciphertext has the wrong shape")

        try:
            plaintext = self._aead.decrypt(nonce, data, None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted bytes are not UTF-8") from e

    def encrypt_optional(self, value: Optional[str]) -> Optional[str]:
        return self.encrypt(value) if value else None

    @staticmethod
    def hash(value: str) -> str:
        """Stable lookup digest; never reversible."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")
