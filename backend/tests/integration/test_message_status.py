"""
tests/integration/test_message_status.py — Delivery status and reactions.

The delivery status of a (message, user) row only ever moves forward, and
reactions live beside it without disturbing it.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from backend.app.extensions import db
from backend.app.models.message_status import MessageStatus
from backend.app.services import message_service

from .conftest import add_participant, auth_headers, make_conversation, register, send


@pytest.fixture
def pair(client, app):
    alice = register(client, "alice")
    bob = register(client, "bob")
    conversation_id = make_conversation(app, alice["user"]["id"], [bob["user"]["id"]])
    message = send(client, alice["access_token"], conversation_id).get_json()["data"]
    return alice, bob, conversation_id, message


def _report(client, token, message_id, status):
    return client.post(
        f"/api/v1/messages/{message_id}/status",
        json={"status": status},
        headers=auth_headers(token),
    )


def _react(client, token, message_id, emoji):
    return client.post(
        f"/api/v1/messages/{message_id}/reactions",
        json={"emoji": emoji},
        headers=auth_headers(token),
    )


class TestDeliveryStatus:

    def test_delivered_then_read(self, client, pair):
        _, bob, _, message = pair

        delivered = _report(client, bob["access_token"], message["id"], "delivered").get_json()["data"]
        assert delivered["status"] == "delivered"
        assert delivered["changed"] is True
        assert delivered["delivered_at"] is not None
        assert delivered["read_at"] is None

        read = _report(client, bob["access_token"], message["id"], "read").get_json()["data"]
        assert read["status"] == "read"
        assert read["changed"] is True
        assert read["delivered_at"] == delivered["delivered_at"]
        assert read["read_at"] is not None

    def test_status_never_moves_backwards(self, client, pair):
        _, bob, _, message = pair
        first = _report(client, bob["access_token"], message["id"], "read").get_json()["data"]

        late = _report(client, bob["access_token"], message["id"], "delivered")
        assert late.status_code == 200
        data = late.get_json()["data"]
        assert data["changed"] is False
        assert data["status"] == "read"
        assert data["read_at"] == first["read_at"]

    def test_read_backfills_delivered_at(self, client, pair):
        _, bob, _, message = pair
        data = _report(client, bob["access_token"], message["id"], "read").get_json()["data"]
        assert data["delivered_at"] is not None
        assert data["delivered_at"] == data["read_at"]

    def test_repeated_report_is_a_noop(self, client, pair):
        _, bob, _, message = pair
        _report(client, bob["access_token"], message["id"], "delivered")
        again = _report(client, bob["access_token"], message["id"], "delivered").get_json()["data"]
        assert again["changed"] is False

    def test_missing_row_is_created_on_first_report(self, client, app, pair):
        alice, _, conversation_id, message = pair
        carol = register(client, "carol")
        # Joined after the message was sent, so no status row exists yet.
        add_participant(app, conversation_id, carol["user"]["id"])

        resp = _report(client, carol["access_token"], message["id"], "delivered")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "delivered"

        with app.app_context():
            rows = db.session.execute(
                select(MessageStatus).where(
                    MessageStatus.message_id == message["id"],
                    MessageStatus.user_id == carol["user"]["id"],
                )
            ).scalars().all()
            assert len(rows) == 1

    def test_pending_is_not_reportable(self, client, pair):
        _, bob, _, message = pair
        resp = _report(client, bob["access_token"], message["id"], "pending")
        assert resp.status_code == 400

    def test_outsider_cannot_report(self, client, pair):
        resp_user = register(client, "mallory")
        _, _, _, message = pair
        resp = _report(client, resp_user["access_token"], message["id"], "read")
        assert resp.status_code == 403

    def test_history_aggregates_delivery(self, client, pair):
        alice, bob, conversation_id, message = pair
        _report(client, bob["access_token"], message["id"], "read")

        history = client.get(
            f"/api/v1/messages/conversation/{conversation_id}",
            headers=auth_headers(alice["access_token"]),
        ).get_json()["data"]
        status = history["messages"][0]["status"]
        assert status["delivered_by_users"] == [bob["user"]["id"]]
        assert status["read_by_users"] == [bob["user"]["id"]]


class TestReactions:

    def test_reaction_leaves_delivery_untouched(self, client, pair):
        _, bob, _, message = pair
        _report(client, bob["access_token"], message["id"], "delivered")

        data = _react(client, bob["access_token"], message["id"], "👍").get_json()["data"]
        assert data["reaction"] == "👍"
        assert data["status"] == "delivered"
        assert data["read_at"] is None

    def test_same_reaction_twice_is_idempotent(self, client, app, pair):
        _, bob, _, message = pair
        first = _react(client, bob["access_token"], message["id"], "🎉").get_json()["data"]
        second = _react(client, bob["access_token"], message["id"], "🎉").get_json()["data"]
        assert first["changed"] is True
        assert second["changed"] is False

        with app.app_context():
            rows = db.session.execute(
                select(MessageStatus).where(
                    MessageStatus.message_id == message["id"],
                    MessageStatus.user_id == bob["user"]["id"],
                )
            ).scalars().all()
            assert len(rows) == 1
            assert rows[0].reaction == "🎉"

    def test_different_emoji_replaces(self, client, pair):
        alice, bob, conversation_id, message = pair
        _react(client, bob["access_token"], message["id"], "🎉")
        data = _react(client, bob["access_token"], message["id"], "❤️").get_json()["data"]
        assert data["reaction"] == "❤️"
        assert data["changed"] is True

        history = client.get(
            f"/api/v1/messages/conversation/{conversation_id}",
            headers=auth_headers(alice["access_token"]),
        ).get_json()["data"]
        assert history["messages"][0]["status"]["reactions"] == {"❤️": [bob["user"]["id"]]}

    def test_cannot_react_to_deleted_message(self, client, pair):
        alice, bob, _, message = pair
        client.delete(f"/api/v1/messages/{message['id']}", headers=auth_headers(alice["access_token"]))

        resp = _react(client, bob["access_token"], message["id"], "👍")
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "MESSAGE_DELETED"


class TestConcurrentStatusReports:
    """
    Two reports for the same (message, user) pair. The competing read is
    applied in full right before the delivered report's compare-and-swap,
    after that report has already passed its own checks.
    """

    def test_read_that_lands_first_is_never_downgraded(self, app, pair, monkeypatch):
        _, bob, _, message = pair
        original_ensure = message_service._ensure_status_row
        raced: list[bool] = []
        competing: list[dict] = []

        def racing_ensure(message_id, user_id, session):
            original_ensure(message_id, user_id, session)
            if not raced:
                raced.append(True)
                competing.append(
                    message_service.update_message_status(message_id, user_id, "read", session)
                )

        monkeypatch.setattr(message_service, "_ensure_status_row", racing_ensure)

        with app.app_context():
            result = message_service.update_message_status(
                message["id"], bob["user"]["id"], "delivered", db.session
            )
            db.session.commit()

            row = db.session.execute(
                select(MessageStatus).where(
                    MessageStatus.message_id == message["id"],
                    MessageStatus.user_id == bob["user"]["id"],
                )
            ).scalar_one()

        assert competing[0]["changed"] is True
        assert competing[0]["status"] == "read"
        assert result["changed"] is False
        assert result["status"] == "read"
        assert row.status.value == "read"
        assert row.read_at is not None
