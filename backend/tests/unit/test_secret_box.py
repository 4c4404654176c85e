"""
tests/unit/test_secret_box.py — Fernet encryption of secrets at rest.
"""

from __future__ import annotations

import pytest

from backend.app.security.secret_box import EncryptionError, decrypt_secret, encrypt_secret

KEY = "unit-test-encryption-key"


def test_encrypt_decrypt():
    token = encrypt_secret("JBSWY3DPEHPK3PXP", KEY)
    assert "JBSWY3DPEHPK3PXP" not in token
    assert decrypt_secret(token, KEY) == "JBSWY3DPEHPK3PXP"


def test_ciphertext_is_randomised():
    assert encrypt_secret("seed", KEY) != encrypt_secret("seed", KEY)


def test_wrong_key_fails():
    token = encrypt_secret("seed", KEY)
    with pytest.raises(EncryptionError):
        decrypt_secret(token, "some-other-key")


def test_tampered_ciphertext_fails():
    token = encrypt_secret("seed", KEY)
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
    with pytest.raises(EncryptionError):
        decrypt_secret(tampered, KEY)


def test_missing_key_is_an_error():
    with pytest.raises(EncryptionError):
        encrypt_secret("seed", "")


def test_empty_plaintext_is_an_error():
    with pytest.raises(EncryptionError):
        encrypt_secret("", KEY)
