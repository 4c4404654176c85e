"""
security/totp.py — Time-based one-time passwords (RFC 6238) via pyotp.

Parameters: base32 seed (160 bits), SHA-1, 6 digits, 30-second step.
Verification accepts the current step and one step either side, which is
90 seconds of clock-skew tolerance in total. Two steps away is rejected.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

import pyotp

STEP_SECONDS = 30
DIGITS = 6
DEFAULT_WINDOW = 1

_CODE_RE = re.compile(r"^[0-9]{6}$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """otpauth:// URI an authenticator app turns into an enrollment QR code."""
    return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).provisioning_uri(
        name=account_name,
        issuer_name=issuer,
    )


def current_code(secret: str, at: datetime | None = None) -> str:
    return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).at(at or _now())


def verify_code(
        secret: str,
        code: str,
        window: int = DEFAULT_WINDOW,
        at: datetime | None = None,
) -> bool:
    normalized = re.sub(r"\s+", "", code or "")
    if not _CODE_RE.match(normalized):
        return False

    totp = pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS)
    return totp.verify(normalized, for_time=at or _now(), valid_window=window)
