"""
middleware/auth_middleware.py — Bearer access-token decorator.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Verifies signature, expiry and the `typ=access` tag (security/tokens.py)
  3. Attaches user_id (int) to flask.g for the duration of the request

Responsibility boundary:
  - Middleware = authentication (401). It never checks conversation
    membership or message ownership; services raise 403 for those.
  - Services receive user_id as a plain int, never a token or a header.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — malformed header, bad signature, wrong type, bad sub
  TOKEN_EXPIRED  (401) — valid token whose exp is in the past
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import g, request

from backend.app.errors import ErrorCode, UnauthorizedError
from backend.app.security import tokens


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces bearer-token authentication.

    Usage:
        @messages_bp.route("/<int:message_id>", methods=["PATCH"])
        @require_auth
        def edit_message(message_id):
            user_id = g.user_id  # always an int when this runs
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def extract_bearer_token(auth_header: str | None) -> str:
    """
    Returns the raw token from an Authorization header value.
    Shared with the real-time gateway, which accepts the same header.
    """
    if not auth_header:
        raise UnauthorizedError(
            "Authentication required. Provide a Bearer token in the Authorization header.",
            code=ErrorCode.TOKEN_MISSING,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError(
            "Authorization header must be in the format: Bearer <token>.",
            code=ErrorCode.TOKEN_INVALID,
        )
    return parts[1]


def _authenticate_request() -> None:
    """Sets flask.g.user_id or raises UnauthorizedError."""
    raw_token = extract_bearer_token(request.headers.get("Authorization", ""))
    g.user_id = tokens.decode_access_token(raw_token)
