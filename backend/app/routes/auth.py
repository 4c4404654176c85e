"""
routes/auth.py — Authentication route handlers.

Layer rules:
  - Parse request body, validate with the schema, call ONE service function,
    commit, return {"status": "success", "data": ...}.
  - No business logic. No DB queries.

The refresh token never appears in a response body. It travels only in an
HttpOnly, SameSite=Lax cookie scoped to /api/v1/auth (Secure in
production). Any 401 from /refresh clears that cookie so the client drops
its session.

Endpoints (url_prefix=/api/v1/auth):
  POST   /register  → 201   (rate limited)
  POST   /login     → 200   (rate limited)
  POST   /refresh   → 200   (rate limited, cookie)
  POST   /logout    → 200   (cookie; never fails)
  GET    /me        → 200   (bearer)
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from backend.app.errors import UnauthorizedError
from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.middleware.rate_limit import rate_limit
from backend.app.schemas.auth_schema import LoginSchema, RegisterSchema
from backend.app.services import auth_service

auth_bp = Blueprint("auth", __name__)


def _client_meta() -> dict:
    return {
        "device_info": request.headers.get("User-Agent") or "unknown",
        "ip_address": request.remote_addr or "0.0.0.0",
    }


def _set_refresh_cookie(response, raw_token: str):
    config = current_app.config
    response.set_cookie(
        config["REFRESH_COOKIE_NAME"],
        raw_token,
        max_age=int(config["JWT_REFRESH_TOKEN_EXPIRES"].total_seconds()),
        path=config["REFRESH_COOKIE_PATH"],
        secure=config["REFRESH_COOKIE_SECURE"],
        httponly=True,
        samesite="Lax",
    )
    return response


def _clear_refresh_cookie(response):
    config = current_app.config
    response.delete_cookie(
        config["REFRESH_COOKIE_NAME"],
        path=config["REFRESH_COOKIE_PATH"],
        secure=config["REFRESH_COOKIE_SECURE"],
        httponly=True,
        samesite="Lax",
    )
    return response


def _session_response(result: dict, status_code: int):
    raw_refresh = result.pop("refresh_token")
    response = jsonify({"status": "success", "data": result})
    response.status_code = status_code
    return _set_refresh_cookie(response, raw_refresh)


@auth_bp.route("/register", methods=["POST"])
@rate_limit("register", limit=10, window_seconds=60)
def register():
    """POST /auth/register — Create account and open a session."""
    data = RegisterSchema().load(request.get_json(force=True, silent=True) or {})
    result = auth_service.register_user(
        username=data["username"],
        email=data["email"],
        password=data["password"],
        display_name=data["display_name"],
        enable_two_factor=data["enable_two_factor"],
        session=db.session,
        **_client_meta(),
    )
    db.session.commit()
    return _session_response(result, 201)


@auth_bp.route("/login", methods=["POST"])
@rate_limit("login", limit=10, window_seconds=60)
def login():
    """POST /auth/login — Authenticate by username or email (+ optional 2FA code)."""
    data = LoginSchema().load(request.get_json(force=True, silent=True) or {})
    result = auth_service.login_user(
        identifier=data["identifier"],
        password=data["password"],
        two_factor_code=data["two_factor_code"],
        session=db.session,
        **_client_meta(),
    )
    db.session.commit()
    return _session_response(result, 200)


@auth_bp.route("/refresh", methods=["POST"])
@rate_limit("refresh", limit=30, window_seconds=60)
def refresh():
    """POST /auth/refresh — Rotate the refresh cookie and mint a new access token."""
    raw_refresh = request.cookies.get(current_app.config["REFRESH_COOKIE_NAME"])
    try:
        result = auth_service.refresh_session(
            raw_refresh_token=raw_refresh,
            session=db.session,
            **_client_meta(),
        )
    except UnauthorizedError as exc:
        # The client must forget this session, so the cookie goes with the error.
        db.session.rollback()
        response = jsonify(exc.to_dict())
        response.status_code = exc.http_status
        return _clear_refresh_cookie(response)

    db.session.commit()
    return _session_response(result, 200)


@auth_bp.route("/logout", methods=["POST"])
def logout():
    """POST /auth/logout — Revoke the cookie's session if there is one. Always 200."""
    auth_service.logout_user(
        raw_refresh_token=request.cookies.get(current_app.config["REFRESH_COOKIE_NAME"]),
        session=db.session,
    )
    db.session.commit()
    response = jsonify({"status": "success", "data": {"message": "Logged out successfully."}})
    return _clear_refresh_cookie(response)


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    """GET /auth/me — Current user's public profile."""
    result = auth_service.get_current_user(user_id=g.user_id, session=db.session)
    return jsonify({"status": "success", "data": result}), 200
