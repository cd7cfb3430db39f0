"""Credential encryption for integration account secrets.

Tokens are AES-256-GCM encrypted with a fresh 96-bit nonce and stored as
``<nonce hex>:<ciphertext hex>`` (the GCM tag is the last 16 bytes of the
ciphertext).
"""

import os
import secrets
import string
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import get_settings
from app.errors import ConfigurationError, CredentialError

KEY_LENGTH = 32
NONCE_BYTES = 12
_AAD = b"integration-account-secret"


class EncryptionService:
    """Encrypts and decrypts per-tenant integration credentials."""

    @staticmethod
    def _key(key: Optional[str] = None) -> bytes:
        raw = key if key is not None else get_settings().encryption_key
        if not raw or len(raw) != KEY_LENGTH:
            raise ConfigurationError("Invalid encryption key. Must be 32 characters long.")
        encoded = raw.encode("utf-8")
        if len(encoded) != KEY_LENGTH:
            raise ConfigurationError("Invalid encryption key. Must be 32 ASCII characters.")
        return encoded

    @classmethod
    def encrypt(cls, text: str, key: Optional[str] = None) -> str:
        aes = AESGCM(cls._key(key))
        nonce = os.urandom(NONCE_BYTES)
        encrypted = aes.encrypt(nonce, text.encode("utf-8"), _AAD)
        return f"{nonce.hex()}:{encrypted.hex()}"

    @classmethod
    def decrypt(cls, token: str, key: Optional[str] = None) -> str:
        aes = AESGCM(cls._key(key))
        nonce_hex, sep, body_hex = (token or "").partition(":")
        if not sep or not nonce_hex or not body_hex:
            raise CredentialError("Malformed encrypted value")
        try:
            nonce = bytes.fromhex(nonce_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as exc:
            raise CredentialError("Malformed encrypted value") from exc
        if len(nonce) != NONCE_BYTES:
            raise CredentialError("Malformed encrypted value")
        try:
            plain = aes.decrypt(nonce, body, _AAD)
        except InvalidTag as exc:
            raise CredentialError("Stored credential could not be decrypted") from exc
        return plain.decode("utf-8")

    @classmethod
    def encrypt_optional(cls, text: Optional[str], key: Optional[str] = None) -> Optional[str]:
        if not text:
            return None
        return cls.encrypt(text, key)

    @classmethod
    def decrypt_optional(cls, token: Optional[str], key: Optional[str] = None) -> str:
        if not token:
            return ""
        return cls.decrypt(token, key)

    @staticmethod
    def generate_key() -> str:
        """A random 32-character key suitable for ``ENCRYPTION_KEY``."""
        alphabet = string.ascii_letters + string.digits
        return "".join(secrets.choice(alphabet) for _ in range(KEY_LENGTH))
