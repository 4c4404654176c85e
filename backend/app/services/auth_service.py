"""
services/auth_service.py — Session manager.

Responsibilities:
  - Account registration (password strength, uniqueness, optional 2FA enrolment)
  - Login by username or email, with an optional one-time code
  - Refresh-token rotation (single-use refresh credentials)
  - Best-effort logout
  - Resolving the current user for `me` and for real-time connections

Layer rules:
  - No imports from routes or schemas
  - No use of flask.request, flask.g, or HTTP status codes
  - current_app.config is read for TTLs, the bcrypt cost and the seed
    encryption key; nothing else about Flask leaks in here.
  - Services flush; the route commits.

Anti-enumeration:
  Every credential failure (unknown account, wrong password, inactive
  account, bad/revoked/expired refresh token) surfaces as the same
  UnauthorizedError message. Only the 2FA signals are distinguishable,
  and only after the password has already been accepted.

Concurrency:
  Two refreshes racing on the same refresh token both pass the read-only
  checks, but the revocation is a conditional UPDATE
  (... WHERE id = :sid AND revoked_at IS NULL). Exactly one of them sees
  rowcount == 1; the other is told UnauthorizedError.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

import jwt
from flask import current_app
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.errors import (
    ConflictError,
    ErrorCode,
    InvalidTwoFactorCodeError,
    NotFoundError,
    TwoFactorRequiredError,
    UnauthorizedError,
    ValidationError,
)
from backend.app.models.auth_session import AuthSession, as_utc
from backend.app.models.user import User
from backend.app.security import passwords, secret_box, tokens, totp

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid credentials."
_INVALID_REFRESH = "Your session is no longer valid. Please sign in again."

# bcrypt hashes used to keep the "unknown account" path as slow as a real
# password check, keyed by cost factor.
_dummy_hashes: dict[int, str] = {}


# ── Private helpers ────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize(value: str) -> str:
    return value.strip().lower()


def _bcrypt_rounds() -> int:
    return current_app.config.get("BCRYPT_LOG_ROUNDS", 12)


def _dummy_hash() -> str:
    rounds = _bcrypt_rounds()
    if rounds not in _dummy_hashes:
        _dummy_hashes[rounds] = passwords.hash_password("not-a-real-password", rounds=rounds)
    return _dummy_hashes[rounds]


def _isoformat(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _build_user_dict(user: User) -> dict:
    """Public view of a User. Never includes the password hash or the 2FA seed."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "two_factor_enabled": bool(user.totp_enabled),
        "status": user.status.value if user.status is not None else "offline",
        "last_seen_at": _isoformat(user.last_seen_at),
        "created_at": _isoformat(user.created_at),
    }


def _open_session(
        user_id: int,
        session: Session,
        device_info: str | None,
        ip_address: str | None,
) -> str:
    """
    Creates an AuthSession row and returns the raw refresh token bound to it.
    Only the token's SHA-256 digest is stored.
    """
    expires_at = _utcnow() + current_app.config["JWT_REFRESH_TOKEN_EXPIRES"]
    session_id = str(uuid.uuid4())
    raw_token = tokens.create_refresh_token(user_id, session_id, expires_at)

    record = AuthSession(
        id=session_id,
        user_id=user_id,
        refresh_token_hash=tokens.hash_refresh_token(raw_token),
        device_info=(device_info or "unknown")[:500],
        ip_address=(ip_address or "0.0.0.0")[:45],
        expires_at=expires_at,
    )
    session.add(record)
    session.flush()
    return raw_token


def _issue_credentials(
        user: User,
        session: Session,
        device_info: str | None,
        ip_address: str | None,
) -> dict:
    return {
        "user": _build_user_dict(user),
        "access_token": tokens.create_access_token(user.id),
        "refresh_token": _open_session(user.id, session, device_info, ip_address),
    }


def _revoke_session(session_id: str, now: datetime, session: Session) -> bool:
    """
    Revokes an AuthSession only if it is still active.
    Returns True iff this call performed the revocation.
    """
    result = session.execute(
        update(AuthSession)
        .where(
            AuthSession.id == session_id,
            AuthSession.revoked_at.is_(None),
        )
        .values(revoked_at=now)
    )
    return result.rowcount == 1


def _load_session_for_refresh_token(raw_refresh_token: str, session: Session) -> AuthSession | None:
    """
    Returns the AuthSession a refresh token points at, or None when the
    token fails signature/type checks or does not hash-match the row.
    Validity (expiry, revocation) is left to the caller.
    """
    try:
        claims = tokens.decode_refresh_token(raw_refresh_token)
    except (jwt.InvalidTokenError, TypeError, ValueError):
        return None

    record = session.get(AuthSession, claims.session_id)
    if record is None or record.user_id != claims.user_id:
        return None
    if not record.matches_refresh_digest(tokens.hash_refresh_token(raw_refresh_token)):
        return None
    return record


# ── Public service functions ───────────────────────────────────────────────

def register_user(
        username: str,
        email: str,
        password: str,
        session: Session,
        display_name: str | None = None,
        enable_two_factor: bool = False,
        device_info: str | None = None,
        ip_address: str | None = None,
) -> dict:
    """
    Creates a new account and opens its first session.

    Raises:
      ValidationError(WEAK_PASSWORD) — details.rules lists every unmet rule;
                                       checked before anything is persisted.
      ConflictError(ACCOUNT_EXISTS)  — username or email taken; deliberately
                                       does not say which.

    Returns: {"user", "access_token", "refresh_token"[, "two_factor_setup"]}
    "two_factor_setup" ({"secret", "otpauth_url"}) is returned here once and
    is never retrievable again.
    """
    unmet = passwords.validate_password_strength(password)
    if unmet:
        raise ValidationError(
            "Password does not meet the strength requirements.",
            code=ErrorCode.WEAK_PASSWORD,
            field="password",
            details={"rules": unmet},
        )

    username = _normalize(username)
    email = _normalize(email)

    existing = session.execute(
        select(User.id).where(or_(User.username == username, User.email == email))
    ).first()
    if existing is not None:
        raise ConflictError("An account with these details already exists.")

    user = User(
        username=username,
        email=email,
        display_name=(display_name or "").strip() or username,
        password_hash=passwords.hash_password(password, rounds=_bcrypt_rounds()),
    )

    two_factor_setup = None
    if enable_two_factor:
        seed = totp.generate_secret()
        user.totp_enabled = True
        user.totp_secret_encrypted = secret_box.encrypt_secret(
            seed,
            current_app.config["TOTP_ENCRYPTION_KEY"],
        )
        two_factor_setup = {
            "secret": seed,
            "otpauth_url": totp.provisioning_uri(
                seed,
                account_name=email,
                issuer=current_app.config.get("TOTP_ISSUER", "Relay Chat"),
            ),
        }

    session.add(user)
    try:
        session.flush()  # populate user.id before opening a session
    except IntegrityError:
        # Lost a race with a concurrent registration for the same handle/email.
        session.rollback()
        raise ConflictError("An account with these details already exists.")

    result = _issue_credentials(user, session, device_info, ip_address)
    if two_factor_setup is not None:
        result["two_factor_setup"] = two_factor_setup

    logger.info("Registered user id=%s two_factor=%s", user.id, enable_two_factor)
    return result


def login_user(
        identifier: str,
        password: str,
        session: Session,
        two_factor_code: str | None = None,
        device_info: str | None = None,
        ip_address: str | None = None,
) -> dict:
    """
    Authenticates by username OR email and opens a new session.

    Raises:
      UnauthorizedError(INVALID_CREDENTIALS) — unknown account, wrong password
                                               or inactive account (same message)
      TwoFactorRequiredError                 — password OK, code needed
      InvalidTwoFactorCodeError              — code outside the ±1 step window

    Returns: {"user", "access_token", "refresh_token"}
    """
    identifier = _normalize(identifier)
    user = session.execute(
        select(User).where(or_(User.username == identifier, User.email == identifier))
    ).scalar_one_or_none()

    if user is None:
        # Burn the same bcrypt time as a real check.
        passwords.verify_password(password, _dummy_hash())
        raise UnauthorizedError(_INVALID_CREDENTIALS)

    if not passwords.verify_password(password, user.password_hash) or not user.is_active:
        raise UnauthorizedError(_INVALID_CREDENTIALS)

    if user.totp_enabled:
        if not two_factor_code:
            raise TwoFactorRequiredError()
        seed = secret_box.decrypt_secret(
            user.totp_secret_encrypted or "",
            current_app.config["TOTP_ENCRYPTION_KEY"],
        )
        if not totp.verify_code(seed, two_factor_code):
            logger.info("Rejected second-factor code for user id=%s", user.id)
            raise InvalidTwoFactorCodeError()

    return _issue_credentials(user, session, device_info, ip_address)


def refresh_session(
        raw_refresh_token: str | None,
        session: Session,
        device_info: str | None = None,
        ip_address: str | None = None,
) -> dict:
    """
    Rotates a refresh token: the presented session is revoked and a brand new
    session + refresh token is issued. Refresh tokens are single-use.

    Raises:
      UnauthorizedError(REFRESH_TOKEN_INVALID) — for every failure, including
        losing a race against a concurrent refresh of the same token.

    Returns: {"user", "access_token", "refresh_token"}
    """
    if not raw_refresh_token:
        raise UnauthorizedError(_INVALID_REFRESH, code=ErrorCode.REFRESH_TOKEN_INVALID)

    now = _utcnow()
    record = _load_session_for_refresh_token(raw_refresh_token, session)
    if record is None or not record.is_valid(now):
        raise UnauthorizedError(_INVALID_REFRESH, code=ErrorCode.REFRESH_TOKEN_INVALID)

    user = session.get(User, record.user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError(_INVALID_REFRESH, code=ErrorCode.REFRESH_TOKEN_INVALID)

    if not _revoke_session(record.id, now, session):
        logger.warning("Refresh token reuse or race detected for session id=%s", record.id)
        raise UnauthorizedError(_INVALID_REFRESH, code=ErrorCode.REFRESH_TOKEN_INVALID)

    return _issue_credentials(
        user,
        session,
        device_info or record.device_info,
        ip_address or record.ip_address,
    )


def logout_user(raw_refresh_token: str | None, session: Session) -> None:
    """
    Revokes the session behind a refresh token, if there is one.

    Never raises for a missing, malformed, foreign or already-revoked token:
    logout must not fail visibly.
    """
    if not raw_refresh_token:
        return

    record = _load_session_for_refresh_token(raw_refresh_token, session)
    if record is None:
        return

    _revoke_session(record.id, _utcnow(), session)
    session.flush()


def get_current_user(user_id: int, session: Session) -> dict:
    """
    Raises:
      NotFoundError(USER_NOT_FOUND) — the token's subject no longer exists
      UnauthorizedError             — the account has been deactivated
    """
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.", code=ErrorCode.USER_NOT_FOUND)
    if not user.is_active:
        raise UnauthorizedError(_INVALID_CREDENTIALS)
    return _build_user_dict(user)


def authenticate_access_token(raw_token: str | None, session: Session) -> User:
    """
    Resolves a bearer access token to an active User, for real-time
    connections. Same checks as an authenticated HTTP request, plus the
    account-active check.

    Raises UnauthorizedError (TOKEN_MISSING / TOKEN_INVALID / TOKEN_EXPIRED).
    """
    if not raw_token:
        raise UnauthorizedError("Authentication required.", code=ErrorCode.TOKEN_MISSING)

    user_id = tokens.decode_access_token(raw_token)
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError(
            "The access token is invalid or has been tampered with.",
            code=ErrorCode.TOKEN_INVALID,
        )
    return user
