"""AES-GCM encryption helpers for credential storage."""

from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calcast.core.errors import DecryptionFailure

logger = logging.getLogger(__name__)

NONCE_SIZE = 12

_cipher: AESGCM | None = None


def derive_key(secret: str) -> bytes:
    """Stretch the configured key material into a 256-bit AES key."""
    return hashlib.pbkdf2_hmac("sha256", secret.encode(), b"calcast-credentials", 100_000)


def _get_cipher() -> AESGCM:
    """Get or create an AESGCM instance derived from ENCRYPTION_KEY."""
    global _cipher  # noqa: PLW0603
    if _cipher is None:
        from calcast.config import get_settings

        _cipher = AESGCM(derive_key(get_settings().encryption_key))
    return _cipher


def encrypt_secret(plaintext: str, cipher: AESGCM | None = None) -> str:
    """Encrypt a string. The random nonce is prepended to the ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = (cipher or _get_cipher()).encrypt(nonce, plaintext.encode(), None)
    return base64.urlsafe_b64encode(nonce + sealed).decode()


def decrypt_secret(token: str, cipher: AESGCM | None = None) -> str:
    """Decrypt a string produced by :func:`encrypt_secret`.

    Fails closed: any tampering, truncation or key mismatch raises
    :class:`DecryptionFailure`, never partial plaintext.
    """
    try:
        raw = base64.urlsafe_b64decode(token.encode())
        if len(raw) <= NONCE_SIZE:
            raise ValueError("ciphertext too short")
        plaintext = (cipher or _get_cipher()).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        return plaintext.decode()
    except (InvalidTag, ValueError, UnicodeDecodeError) as exc:
        logger.error("Failed to decrypt credential: %s", type(exc).__name__)
        raise DecryptionFailure("Invalid or corrupted credential data") from exc


def mask_credential(value: str, visible: int = 4) -> str:
    """Mask a credential string, showing only the last N characters.

    Examples:
        mask_credential("ya29.abcdefghijk") → "************hijk"
        mask_credential("short") → "*hort"
    """
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def reset_cipher() -> None:
    """Reset cached cipher instance (for testing)."""
    global _cipher  # noqa: PLW0603
    _cipher = None
