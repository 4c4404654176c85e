"""
errors.py — AppError base class, error taxonomy and error code registry.

Every error returned by the API or acknowledged over the real-time channel
uses a code defined here. Do not raise strings or generic exceptions from
service, gateway or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Never conflate 401 (unauthenticated) with 403 (unauthorized).
  - Authentication failures use ONE message regardless of the cause
    (unknown account, wrong password, revoked session) to prevent
    account enumeration.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
            details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field    # which request field caused the error
        self.details     = details  # structured, safe-to-show extra context

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        if self.details:
            payload["details"] = self.details
        return {"status": "error", "error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# These are the string values sent in API responses and socket acks.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    VALIDATION_FAILED          = "VALIDATION_FAILED"
    WEAK_PASSWORD              = "WEAK_PASSWORD"
    EMPTY_CONTENT              = "EMPTY_CONTENT"
    CONVERSATION_NOT_FOUND     = "CONVERSATION_NOT_FOUND"
    INVALID_REPLY_TARGET       = "INVALID_REPLY_TARGET"
    MESSAGE_DELETED            = "MESSAGE_DELETED"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    ACCOUNT_EXISTS             = "ACCOUNT_EXISTS"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    MESSAGE_NOT_FOUND          = "MESSAGE_NOT_FOUND"
    USER_NOT_FOUND             = "USER_NOT_FOUND"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but you are not allowed
    INVALID_CREDENTIALS        = "INVALID_CREDENTIALS"      # 401
    TWO_FACTOR_REQUIRED        = "TWO_FACTOR_REQUIRED"      # 401
    INVALID_TWO_FACTOR_CODE    = "INVALID_TWO_FACTOR_CODE"  # 401
    TOKEN_MISSING              = "TOKEN_MISSING"            # 401
    TOKEN_INVALID              = "TOKEN_INVALID"            # 401
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"            # 401
    REFRESH_TOKEN_INVALID      = "REFRESH_TOKEN_INVALID"    # 401
    FORBIDDEN                  = "FORBIDDEN"                # 403
    NOT_A_PARTICIPANT          = "NOT_A_PARTICIPANT"        # 403

    # ── Throttling (429) ───────────────────────────────────────────────────
    RATE_LIMITED               = "RATE_LIMITED"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


# ── Taxonomy ───────────────────────────────────────────────────────────────
#
# Thin subclasses so callers can branch on type (e.g. the client re-prompts
# for a code on TwoFactorRequiredError) while the global error handler keeps
# treating every one of them as a plain AppError.
# ──────────────────────────────────────────────────────────────────────────

class ValidationError(AppError):
    """Malformed or missing input (400). Field-level detail is safe to show."""

    def __init__(
            self,
            message: str,
            code: str = ErrorCode.VALIDATION_FAILED,
            field: str | None = None,
            details: dict | None = None,
    ) -> None:
        super().__init__(code, message, 400, field=field, details=details)


class UnauthorizedError(AppError):
    """Missing, invalid or expired credential, or a failed credential match (401)."""

    def __init__(
            self,
            message: str = "Invalid credentials.",
            code: str = ErrorCode.INVALID_CREDENTIALS,
    ) -> None:
        super().__init__(code, message, 401)


class TwoFactorRequiredError(UnauthorizedError):
    """Password accepted but the account needs a one-time code."""

    def __init__(self) -> None:
        super().__init__(
            "A two-factor authentication code is required.",
            code=ErrorCode.TWO_FACTOR_REQUIRED,
        )


class InvalidTwoFactorCodeError(UnauthorizedError):
    def __init__(self) -> None:
        super().__init__(
            "The two-factor authentication code is invalid or has expired.",
            code=ErrorCode.INVALID_TWO_FACTOR_CODE,
        )


class ForbiddenError(AppError):
    """Authenticated but not permitted (403)."""

    def __init__(self, message: str = "Access denied.", code: str = ErrorCode.FORBIDDEN) -> None:
        super().__init__(code, message, 403)


class NotFoundError(AppError):
    def __init__(self, message: str, code: str = ErrorCode.MESSAGE_NOT_FOUND) -> None:
        super().__init__(code, message, 404)


class ConflictError(AppError):
    def __init__(self, message: str, code: str = ErrorCode.ACCOUNT_EXISTS) -> None:
        super().__init__(code, message, 409)


class RateLimitedError(AppError):
    """Too many attempts in the current window (429). Carries a wait-time hint."""

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            ErrorCode.RATE_LIMITED,
            "Too many requests. Please try again later.",
            429,
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds
