"""Authenticated encryption for deposit private keys stored in the database.

Envelopes are four base64 fields joined by ``:`` (salt, nonce, tag, ciphertext).
The AES-256-GCM key is derived per record with PBKDF2-HMAC-SHA256 over the
passphrase and a random salt, so every envelope uses a distinct key.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from app.core.config import MIN_ENCRYPTION_SECRET_LENGTH, Settings
from app.errors import KeyStoreError, KeyStoreIntegrityError

KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _require_passphrase(passphrase: str | None) -> str:
    if not passphrase or len(passphrase) < MIN_ENCRYPTION_SECRET_LENGTH:
        raise KeyStoreError(
            f"Encryption passphrase must be at least {MIN_ENCRYPTION_SECRET_LENGTH} characters"
        )
    return passphrase


def encrypt(secret: str, passphrase: str) -> str:
    """Seal ``secret`` into an envelope string."""

    passphrase = _require_passphrase(passphrase)
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(_derive_key(passphrase, salt)).encrypt(nonce, secret.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (salt, nonce, tag, ciphertext)
    )


def decrypt(envelope: str, passphrase: str) -> str:
    """Open an envelope produced by :func:`encrypt`.

    Raises :class:`KeyStoreIntegrityError` for a wrong passphrase, a tampered
    envelope or a malformed one. Never returns a partially decoded value.
    """

    passphrase = _require_passphrase(passphrase)
    parts = envelope.split(":") if isinstance(envelope, str) else []
    if len(parts) != 4:
        raise KeyStoreIntegrityError("Invalid encrypted data format")
    try:
        salt, nonce, tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
    except (binascii.Error, ValueError) as exc:
        raise KeyStoreIntegrityError("Invalid encrypted data encoding") from exc
    if len(salt) != SALT_LENGTH or len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        raise KeyStoreIntegrityError("Invalid encrypted data format")

    try:
        plaintext = AESGCM(_derive_key(passphrase, salt)).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise KeyStoreIntegrityError("Envelope failed authentication") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise KeyStoreIntegrityError("Decrypted secret is not valid text") from exc


def is_encrypted(value: str | None) -> bool:
    if not value or not isinstance(value, str):
        return False
    parts = value.split(":")
    return len(parts) == 4 and all(parts)


class EncryptedKeyStore:
    """Seal and open per-address secrets according to the configured passphrase.

    Without a passphrase the store runs in plaintext mode; that mode is an
    explicit configuration choice and is announced by :meth:`warn_if_plaintext`.
    """

    def __init__(self, passphrase: str | None) -> None:
        self._passphrase = passphrase

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptedKeyStore":
        return cls(settings.encryption_secret)

    @property
    def enabled(self) -> bool:
        return self._passphrase is not None

    def warn_if_plaintext(self) -> None:
        if self.enabled:
            return
        logger.warning("=" * 72)
        logger.warning("ENCRYPTION_SECRET is not set: deposit private keys will be stored UNENCRYPTED")
        logger.warning(
            "Set ENCRYPTION_SECRET (minimum {} characters) before accepting real deposits",
            MIN_ENCRYPTION_SECRET_LENGTH,
        )
        logger.warning("=" * 72)

    def seal(self, secret: str) -> str:
        if not self.enabled:
            return secret
        return encrypt(secret, self._passphrase)

    def open(self, stored: str) -> str:
        if not self.enabled:
            if is_encrypted(stored):
                raise KeyStoreIntegrityError("Stored key is encrypted but no passphrase is configured")
            return stored
        if not is_encrypted(stored):
            # Written while the store ran in plaintext mode.
            return stored
        return decrypt(stored, self._passphrase)


__all__ = ["EncryptedKeyStore", "decrypt", "encrypt", "is_encrypted"]
