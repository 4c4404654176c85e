"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time, so tests can build isolated
         app instances.

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging (level from LOG_LEVEL)
  3. Initialise extensions (SQLAlchemy, Flask-SocketIO) via init_app()
  4. Create the real-time Gateway and bind its Socket.IO handlers
  5. Register all route blueprints under /api/v1
  6. Register global error handlers (AppError → JSON, Exception → 500)
"""

from __future__ import annotations

import logging
import traceback

from flask import Flask, jsonify, request
from marshmallow import ValidationError

from backend.config import config_by_name, validate_production_config

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to "development".
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.app.extensions import db, socketio
    from backend.app.realtime.gateway import Gateway
    from backend.app.realtime.socket_events import register_socket_handlers

    db.init_app(app)

    register_socket_handlers(socketio)
    socketio.init_app(
        app,
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
        cors_allowed_origins=app.config["SOCKETIO_CORS_ORIGINS"],
    )

    def _emit(event: str, payload: dict, sid: str) -> None:
        socketio.emit(event, payload, to=sid)

    app.extensions["gateway"] = Gateway(emit=_emit)

    # ── Model registration ─────────────────────────────────────────────────
    # Import all models so that SQLAlchemy's MetaData is populated before
    # db.create_all(). The import side effect is the point.
    with app.app_context():
        from backend.app.models import (  # noqa: F401
            auth_session,
            conversation,
            message,
            message_status,
            user,
        )

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    """One stream handler on the `backend` logger; app.logger follows the same level."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)

    package_logger = logging.getLogger("backend")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    app.logger.setLevel(level)


def _register_blueprints(app: Flask) -> None:
    """Registers all route blueprints under the /api/v1 prefix."""
    from backend.app.routes.auth import auth_bp
    from backend.app.routes.messages import messages_bp

    app.register_blueprint(auth_bp,     url_prefix="/api/v1/auth")
    app.register_blueprint(messages_bp, url_prefix="/api/v1/messages")


def _register_error_handlers(app: Flask) -> None:
    """
    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
                        (RateLimitedError also gets a Retry-After header)
      ValidationError → marshmallow schema errors as MISSING_FIELD / INVALID_FIELD (400)
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces never leave the server.
    """
    from backend.app.errors import AppError, ErrorCode, RateLimitedError
    from backend.app.middleware.rate_limit import apply_rate_limit_headers

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """Routes never catch AppError; they let it propagate here."""
        response = jsonify(error.to_dict())
        response.status_code = error.http_status
        if isinstance(error, RateLimitedError):
            response.headers["Retry-After"] = str(error.retry_after_seconds)
        return response

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Reports the FIRST field error only. Marshmallow's
        "Missing data for required field." becomes MISSING_FIELD; everything
        else is INVALID_FIELD.
        """
        messages = error.messages
        field = None
        message = "Invalid input."

        if isinstance(messages, dict) and messages:
            field_name, field_errors = next(iter(messages.items()))
            field = field_name if field_name != "_schema" else None
            if isinstance(field_errors, list) and field_errors:
                message = str(field_errors[0])
            elif isinstance(field_errors, dict):
                message = "Invalid value."
            else:
                message = str(field_errors)
        elif isinstance(messages, list) and messages:
            message = str(messages[0])

        code = (
            ErrorCode.MISSING_FIELD
            if message.startswith("Missing data for required field")
            else ErrorCode.INVALID_FIELD
        )
        body = {"code": code, "message": message}
        if field is not None:
            body["field"] = field
        return jsonify({"status": "error", "error": body}), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        # Let Flask's own HTTP errors (404 for unknown routes, 405, ...) through.
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException):
            return jsonify({
                "status": "error",
                "error": {"code": error.name.upper().replace(" ", "_"), "message": error.description},
            }), error.code

        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "status": "error",
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            },
        }), 500

    app.after_request(apply_rate_limit_headers)


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser clients. Origins listed in
    SOCKETIO_CORS_ORIGINS are always allowed; DEBUG/TESTING reflect any
    origin. Credentials are allowed because the refresh token is a cookie.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if not origin:
            return response

        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))
        if allow_all or origin in app.config.get("SOCKETIO_CORS_ORIGINS", []):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"

        return response
