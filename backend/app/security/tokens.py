"""
security/tokens.py — JWT access and refresh credentials.

Token design:
  - Access token:  JWT HS256, short TTL (JWT_ACCESS_TOKEN_EXPIRES),
                   claims sub (user_id as str), typ="access", iat, exp, jti.
                   Validity is signature + expiry only; nothing is stored.
  - Refresh token: JWT HS256 signed with a DIFFERENT secret
                   (JWT_REFRESH_SECRET_KEY), long TTL, claims sub, sid
                   (auth_sessions.id), typ="refresh", iat, exp, jti.
                   Stored server-side only as a SHA-256 digest.

The `typ` claim is checked on every decode so one kind can never be used
where the other is expected.

current_app.config is the only Flask dependency here: secrets must come from
validated config, never hardcoded.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

import jwt
from flask import current_app

from backend.app.errors import ErrorCode, UnauthorizedError

ACCESS_TYPE = "access"
REFRESH_TYPE = "refresh"


@dataclass(frozen=True)
class RefreshClaims:
    user_id: int
    session_id: str


def _algorithm() -> str:
    return current_app.config.get("JWT_ALGORITHM", "HS256")


def hash_refresh_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw refresh token. The only form ever persisted."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def create_access_token(user_id: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "typ": ACCESS_TYPE,
        "iat": now,
        "exp": now + current_app.config["JWT_ACCESS_TOKEN_EXPIRES"],
        # Each issued token is unique even if generated in the same second.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET_KEY"], algorithm=_algorithm())


def create_refresh_token(user_id: int, session_id: str, expires_at: datetime) -> str:
    payload = {
        "sub": str(user_id),
        "sid": session_id,
        "typ": REFRESH_TYPE,
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(
        payload,
        current_app.config["JWT_REFRESH_SECRET_KEY"],
        algorithm=_algorithm(),
    )


def decode_access_token(raw_token: str) -> int:
    """
    Verifies an access token and returns the user_id it binds to.

    Raises:
      UnauthorizedError(TOKEN_EXPIRED) — signature fine, exp in the past.
      UnauthorizedError(TOKEN_INVALID) — anything else.
    """
    try:
        payload = jwt.decode(
            raw_token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[_algorithm()],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError(
            "The access token has expired. Use POST /auth/refresh to obtain a new one.",
            code=ErrorCode.TOKEN_EXPIRED,
        )
    except jwt.InvalidTokenError:
        raise UnauthorizedError(
            "The access token is invalid or has been tampered with.",
            code=ErrorCode.TOKEN_INVALID,
        )

    if payload.get("typ") != ACCESS_TYPE:
        raise UnauthorizedError(
            "The access token is invalid or has been tampered with.",
            code=ErrorCode.TOKEN_INVALID,
        )

    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        raise UnauthorizedError(
            "The 'sub' claim in the access token is not a valid user ID.",
            code=ErrorCode.TOKEN_INVALID,
        )


def decode_refresh_token(raw_token: str) -> RefreshClaims:
    """
    Verifies a refresh token's signature, expiry and type tag.

    Raises jwt.InvalidTokenError (or ValueError for a malformed sub); the
    session manager folds every failure into one UnauthorizedError.
    """
    payload = jwt.decode(
        raw_token,
        current_app.config["JWT_REFRESH_SECRET_KEY"],
        algorithms=[_algorithm()],
        options={"require": ["sub", "sid", "exp"]},
    )
    if payload.get("typ") != REFRESH_TYPE:
        raise jwt.InvalidTokenError("wrong token type")
    return RefreshClaims(user_id=int(payload["sub"]), session_id=str(payload["sid"]))
