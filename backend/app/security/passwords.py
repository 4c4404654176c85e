"""
security/passwords.py — Password strength rules and bcrypt hashing.

Stateless. No DB, no Flask request state; the bcrypt cost factor is passed in
by the caller (auth_service reads BCRYPT_LOG_ROUNDS from config).

Raw passwords are never stored and never logged.
"""

from __future__ import annotations

import re

import bcrypt

MIN_LENGTH = 12
MAX_LENGTH = 128

# bcrypt only looks at the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72


def validate_password_strength(password: str) -> list[str]:
    """
    Returns every rule the password fails, in a stable order.
    An empty list means the password is acceptable.
    """
    reasons: list[str] = []

    if len(password) < MIN_LENGTH:
        reasons.append(f"Must be at least {MIN_LENGTH} characters.")
    if len(password) > MAX_LENGTH:
        reasons.append(f"Must be at most {MAX_LENGTH} characters.")
    if not re.search(r"[a-z]", password):
        reasons.append("Must include a lowercase letter.")
    if not re.search(r"[A-Z]", password):
        reasons.append("Must include an uppercase letter.")
    if not re.search(r"[0-9]", password):
        reasons.append("Must include a number.")
    if not re.search(r"[^A-Za-z0-9\s]", password):
        reasons.append("Must include a symbol (punctuation).")
    if re.search(r"\s", password):
        reasons.append("Must not include spaces.")

    return reasons


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    # Constant-time comparison; bcrypt.checkpw handles this internally.
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False
