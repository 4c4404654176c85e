"""
security/secret_box.py — Authenticated encryption for secrets at rest.

Used for the second-factor seed. Fernet (AES-128-CBC + HMAC-SHA256) gives
confidentiality and integrity; a tampered or foreign ciphertext fails to
decrypt instead of yielding garbage.

The configured TOTP_ENCRYPTION_KEY may be any string; it is stretched to a
Fernet key with SHA-256. Rotate by re-encrypting with a new key.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""


def _fernet(key_material: str) -> Fernet:
    if not key_material:
        raise EncryptionError("TOTP_ENCRYPTION_KEY is not configured.")
    digest = hashlib.sha256(key_material.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(plaintext: str, key_material: str) -> str:
    if not plaintext:
        raise EncryptionError("Secret must be a non-empty string.")
    return _fernet(key_material).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str, key_material: str) -> str:
    try:
        return _fernet(key_material).decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as exc:
        logger.error("Stored secret failed authentication during decryption")
        raise EncryptionError("Invalid or corrupted secret.") from exc
