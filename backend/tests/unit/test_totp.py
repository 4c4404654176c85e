"""
tests/unit/test_totp.py — One-time code generation and the ±1 step window.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from backend.app.security import totp

SECRET = "JBSWY3DPEHPK3PXP"
# Mid-step, so ±30 s lands squarely inside the neighbouring steps.
T0 = datetime(2026, 3, 1, 12, 0, 15, tzinfo=timezone.utc)


def test_generated_secret_is_base32():
    secret = totp.generate_secret()
    assert len(secret) >= 16
    assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")


def test_code_is_six_digits():
    code = totp.current_code(SECRET, at=T0)
    assert len(code) == 6
    assert code.isdigit()


def test_current_step_verifies():
    code = totp.current_code(SECRET, at=T0)
    assert totp.verify_code(SECRET, code, at=T0)


def test_one_step_either_side_verifies():
    code = totp.current_code(SECRET, at=T0)
    assert totp.verify_code(SECRET, code, at=T0 + timedelta(seconds=30))
    assert totp.verify_code(SECRET, code, at=T0 - timedelta(seconds=30))


def test_two_steps_away_is_rejected():
    code = totp.current_code(SECRET, at=T0)
    assert not totp.verify_code(SECRET, code, at=T0 + timedelta(seconds=60))
    assert not totp.verify_code(SECRET, code, at=T0 - timedelta(seconds=60))


def test_whitespace_inside_code_is_ignored():
    code = totp.current_code(SECRET, at=T0)
    assert totp.verify_code(SECRET, f"{code[:3]} {code[3:]}", at=T0)


def test_malformed_codes_are_rejected():
    for bad in ("", None, "12345", "1234567", "abcdef"):
        assert not totp.verify_code(SECRET, bad, at=T0)


def test_provisioning_uri_names_account_and_issuer():
    uri = totp.provisioning_uri(SECRET, account_name="alice@test.com", issuer="Relay Chat")
    assert uri.startswith("otpauth://totp/")
    assert f"secret={SECRET}" in uri
    assert "issuer=Relay%20Chat" in uri
