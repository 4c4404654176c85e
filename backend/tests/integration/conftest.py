"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing"), which
    points at an in-memory SQLite database (TEST_DATABASE_URL overrides).
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order, the gateway gets a
    fresh connection registry and the rate limiter forgets its windows.

Helper functions (not fixtures) cover common operations:
  - register(client, ...)          → response data + "refresh_token" from the cookie
  - login(client, ...)             → same
  - auth_headers(token)            → {"Authorization": "Bearer <token>"}
  - refresh_cookie(response)       → raw refresh token from Set-Cookie, or None
  - make_conversation(app, ...)    → conversation id (conversation CRUD lives
                                     outside this backend, so rows are inserted
                                     directly)
  - remove_participant(app, ...)   → flags a participant as departed
  - connect_socket(app, token)     → Flask-SocketIO test client
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select, text

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.extensions import socketio
from backend.app.middleware.rate_limit import limiter
from backend.app.models.conversation import (
    Conversation,
    ConversationParticipant,
    ConversationType,
    ParticipantRole,
)
from backend.app.realtime.registry import ConnectionRegistry

STRONG_PASSWORD = "Correct-Horse-42"


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM message_statuses"))
            conn.execute(text("DELETE FROM messages"))
            conn.execute(text("DELETE FROM conversation_participants"))
            conn.execute(text("DELETE FROM conversations"))
            conn.execute(text("DELETE FROM auth_sessions"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()

    app.extensions["gateway"].registry = ConnectionRegistry()
    limiter.reset()


@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def refresh_cookie(response) -> str | None:
    """Raw refresh token from the response's Set-Cookie header; "" when cleared."""
    for header in response.headers.getlist("Set-Cookie"):
        if header.startswith("refresh_token="):
            return header.split(";", 1)[0].split("=", 1)[1]
    return None


def register(
    client,
    username: str = "alice",
    email: str | None = None,
    password: str = STRONG_PASSWORD,
    enable_two_factor: bool = False,
) -> dict:
    """
    Registers a new user and returns the response data dict plus the
    refresh token that arrived in the cookie.
    """
    if email is None:
        email = f"{username}@test.com"
    resp = client.post(
        "/api/v1/auth/register",
        json={
            "username": username,
            "email": email,
            "password": password,
            "enable_two_factor": enable_two_factor,
        },
    )
    assert resp.status_code == 201, f"register failed: {resp.get_json()}"
    data = resp.get_json()["data"]
    data["refresh_token"] = refresh_cookie(resp)
    return data


def login(client, identifier: str, password: str = STRONG_PASSWORD, code: str | None = None) -> dict:
    payload = {"identifier": identifier, "password": password}
    if code is not None:
        payload["two_factor_code"] = code
    resp = client.post("/api/v1/auth/login", json=payload)
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    data = resp.get_json()["data"]
    data["refresh_token"] = refresh_cookie(resp)
    return data


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def make_conversation(
    app,
    creator_id: int,
    member_ids: list[int],
    admin_ids: tuple[int, ...] = (),
    title: str | None = None,
) -> int:
    """Inserts a conversation with creator + members. The creator is an admin."""
    with app.app_context():
        everyone = [creator_id] + [m for m in member_ids if m != creator_id]
        conversation = Conversation(
            type=ConversationType.GROUP if len(everyone) > 2 else ConversationType.DIRECT,
            title=title,
            created_by=creator_id,
        )
        _db.session.add(conversation)
        _db.session.flush()
        for user_id in everyone:
            role = (
                ParticipantRole.ADMIN
                if user_id == creator_id or user_id in admin_ids
                else ParticipantRole.MEMBER
            )
            _db.session.add(
                ConversationParticipant(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    role=role,
                )
            )
        _db.session.commit()
        return conversation.id


def add_participant(app, conversation_id: int, user_id: int) -> None:
    with app.app_context():
        _db.session.add(
            ConversationParticipant(conversation_id=conversation_id, user_id=user_id)
        )
        _db.session.commit()


def remove_participant(app, conversation_id: int, user_id: int) -> None:
    """Marks a participant as having left; the row itself is kept."""
    with app.app_context():
        participant = _db.session.execute(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
        ).scalar_one()
        participant.is_active = False
        participant.left_at = datetime.now(timezone.utc)
        _db.session.commit()


def send(client, token: str, conversation_id: int, content: str = "ciphertext", **extra):
    """POST /messages. Returns the HTTP response."""
    return client.post(
        "/api/v1/messages",
        json={"conversation_id": conversation_id, "content": content, **extra},
        headers=auth_headers(token),
    )


def connect_socket(app, token: str | None = None, headers: dict | None = None):
    auth = {"token": token} if token is not None else None
    return socketio.test_client(app, auth=auth, headers=headers)


def received(socket_client, event: str) -> list:
    """Drains the socket's queue and returns the first arg of every `event`."""
    return [
        packet["args"][0]
        for packet in socket_client.get_received()
        if packet["name"] == event
    ]
