"""
AES-256-GCM encryption for stored provider API keys.

Each encryption uses a fresh 16-byte IV. Ciphertext, IV and auth tag are
stored hex-encoded in separate fields, so a stored key looks like
``{api_key_encrypted, encryption_iv, encryption_auth_tag}``.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from voiceai.exceptions import ConfigurationError, KeyEncryptionError

log = structlog.get_logger(__name__)

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
_DEV_KEY = b"dev-only-key-not-for-production!!"[:KEY_BYTES]


@dataclass(frozen=True)
class EncryptedKey:
    encrypted: str
    iv: str
    auth_tag: str

    def to_document(self) -> dict[str, str]:
        return {
            "api_key_encrypted": self.encrypted,
            "encryption_iv": self.iv,
            "encryption_auth_tag": self.auth_tag,
        }

    @classmethod
    def from_document(cls, data: dict) -> "EncryptedKey":
        try:
            return cls(
                encrypted=data["api_key_encrypted"],
                iv=data["encryption_iv"],
                auth_tag=data["encryption_auth_tag"],
            )
        except KeyError as exc:
            raise KeyEncryptionError(f"Stored key is missing {exc.args[0]}") from exc


def derive_key(secret: Optional[str], production: bool = False) -> bytes:
    """
    Key material: the first 32 bytes of ``secret``.

    A missing secret is fatal in production and falls back to a fixed
    development key elsewhere.
    """
    if not secret:
        if production:
            raise ConfigurationError("ENCRYPTION_KEY is required in production")
        log.warning("encryption_dev_key_in_use")
        return _DEV_KEY
    raw = secret.encode("utf-8")
    if len(raw) < KEY_BYTES:
        raise ConfigurationError(f"ENCRYPTION_KEY must be at least {KEY_BYTES} characters")
    return raw[:KEY_BYTES]


class ApiKeyCipher:
    """Encrypt/decrypt API keys with AES-256-GCM."""

    def __init__(self, secret: Optional[str] = None, production: bool = False):
        self._aesgcm = AESGCM(derive_key(secret, production))

    def encrypt(self, plaintext: str) -> EncryptedKey:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedKey(encrypted=ciphertext.hex(), iv=iv.hex(), auth_tag=tag.hex())

    def decrypt(self, payload: EncryptedKey) -> str:
        try:
            ciphertext = bytes.fromhex(payload.encrypted)
            iv = bytes.fromhex(payload.iv)
            tag = bytes.fromhex(payload.auth_tag)
        except ValueError as exc:
            raise KeyEncryptionError("Stored key is not valid hex") from exc
        if len(tag) != TAG_BYTES or not iv:
            raise KeyEncryptionError("Stored key has a malformed IV or auth tag")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            log.error("api_key_decrypt_failed")
            raise KeyEncryptionError("Failed to decrypt key: invalid tag or wrong secret") from exc
        return plaintext.decode("utf-8")


def generate_secret() -> str:
    """A random secret suitable for ``ENCRYPTION_KEY``."""
    return secrets.token_urlsafe(48)
