"""
tests/unit/test_gateway_units.py — Gateway fan-out and acknowledgement rules
with a recording emit function and the services patched out.
"""

from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from backend.app.errors import ErrorCode, ForbiddenError, UnauthorizedError
from backend.app.models.user import PresenceStatus
from backend.app.realtime.gateway import Gateway
from backend.app.services import auth_service, membership_service, message_service


class RecordingEmit:

    def __init__(self, broken_sids=()):
        self.sent: list[tuple[str, dict, str]] = []
        self.broken_sids = set(broken_sids)

    def __call__(self, event, payload, sid):
        if sid in self.broken_sids:
            raise ConnectionError(f"{sid} is gone")
        self.sent.append((event, payload, sid))

    def to(self, sid, event=None):
        return [p for e, p, s in self.sent if s == sid and (event is None or e == event)]


USERS = {
    1: SimpleNamespace(id=1, username="alice", status=PresenceStatus.OFFLINE, last_seen_at=None),
    2: SimpleNamespace(id=2, username="bob", status=PresenceStatus.OFFLINE, last_seen_at=None),
}


@pytest.fixture
def services(monkeypatch):
    tokens = {"tok-alice": 1, "tok-bob": 2}

    def authenticate(raw, session):
        if raw not in tokens:
            raise UnauthorizedError(code=ErrorCode.TOKEN_INVALID)
        return USERS[tokens[raw]]

    monkeypatch.setattr(auth_service, "authenticate_access_token", authenticate)
    monkeypatch.setattr(membership_service, "conversation_ids_for_user", lambda uid, s: [10])
    monkeypatch.setattr(
        membership_service, "co_participant_ids", lambda uid, s: [u for u in USERS if u != uid]
    )


@pytest.fixture
def session():
    s = MagicMock()
    s.get.side_effect = lambda model, pk: USERS.get(pk)
    return s


@pytest.fixture
def emit():
    return RecordingEmit()


@pytest.fixture
def gateway(emit, services):
    return Gateway(emit=emit)


class TestConnect:

    def test_bad_token_registers_nothing(self, gateway, session):
        with pytest.raises(UnauthorizedError):
            gateway.connect("x1", "forged", session)
        assert len(gateway.registry) == 0

    def test_first_connection_announces_online(self, gateway, emit, session):
        gateway.connect("b1", "tok-bob", session)
        emit.sent.clear()

        gateway.connect("a1", "tok-alice", session)

        assert emit.to("b1", "presence.changed") == [
            {"userId": 1, "status": "online", "lastSeenAt": None}
        ]
        assert gateway.registry.get("a1").rooms == {10}
        session.commit.assert_called()

    def test_second_connection_is_quiet(self, gateway, emit, session):
        gateway.connect("b1", "tok-bob", session)
        gateway.connect("a1", "tok-alice", session)
        emit.sent.clear()

        gateway.connect("a2", "tok-alice", session)
        gateway.disconnect("a1", session)
        assert emit.sent == []

        gateway.disconnect("a2", session)
        offline = emit.to("b1", "presence.changed")
        assert [p["status"] for p in offline] == ["offline"]
        assert offline[0]["lastSeenAt"] is not None

    def test_disconnect_unknown_sid_is_noop(self, gateway, emit, session):
        gateway.disconnect("ghost", session)
        assert emit.sent == []


class TestFanout:

    def test_one_broken_connection_does_not_stop_the_rest(self, services, session):
        emit = RecordingEmit(broken_sids={"b1"})
        gateway = Gateway(emit=emit)
        for sid, token in (("a1", "tok-alice"), ("b1", "tok-bob"), ("b2", "tok-bob")):
            gateway.connect(sid, token, session)
        emit.sent.clear()

        delivered = gateway.publish_message({"id": 5, "conversation_id": 10})

        assert delivered == 2
        assert emit.to("a1", "message.received") == [{"id": 5, "conversation_id": 10}]
        assert emit.to("b2", "message.received") == [{"id": 5, "conversation_id": 10}]

    def test_publish_excludes_origin(self, gateway, emit, session):
        gateway.connect("a1", "tok-alice", session)
        gateway.connect("b1", "tok-bob", session)
        emit.sent.clear()

        gateway.publish_message({"id": 5, "conversation_id": 10}, exclude_sid="a1")
        assert emit.to("a1") == []
        assert len(emit.to("b1")) == 1


class TestEvents:

    def test_events_require_a_registered_connection(self, gateway, session):
        ack = gateway.typing("ghost", {"conversationId": 10, "isTyping": True})
        assert ack["error"]["code"] == ErrorCode.TOKEN_MISSING

    def test_typing_skips_every_connection_of_the_typist(self, gateway, emit, session):
        gateway.connect("a1", "tok-alice", session)
        gateway.connect("a2", "tok-alice", session)
        gateway.connect("b1", "tok-bob", session)
        emit.sent.clear()

        ack = gateway.typing("a1", {"conversationId": 10, "isTyping": False})

        assert ack == {"success": True}
        assert [s for _, _, s in emit.sent] == ["b1"]
        assert emit.sent[0][1]["isTyping"] is False

    def test_send_acknowledges_with_real_id(self, gateway, emit, session, monkeypatch):
        monkeypatch.setattr(
            message_service,
            "send_message",
            lambda **kw: {"id": 77, "conversation_id": kw["conversation_id"], "content": kw["content"]},
        )
        gateway.connect("a1", "tok-alice", session)
        gateway.connect("b1", "tok-bob", session)
        emit.sent.clear()

        ack = gateway.send_message("a1", {"conversationId": 10, "content": "hi"}, session)

        assert ack["success"] is True
        assert ack["messageId"] == 77
        assert emit.to("b1", "message.received")[0]["id"] == 77
        assert emit.to("a1") == []

    def test_service_error_becomes_ack_and_rolls_back(self, gateway, emit, session, monkeypatch):
        def refuse(**kwargs):
            raise ForbiddenError(code=ErrorCode.NOT_A_PARTICIPANT)

        monkeypatch.setattr(message_service, "send_message", refuse)
        gateway.connect("a1", "tok-alice", session)
        session.reset_mock()

        ack = gateway.send_message("a1", {"conversationId": 10, "content": "hi"}, session)

        assert ack["success"] is False
        assert ack["error"]["code"] == ErrorCode.NOT_A_PARTICIPANT
        session.rollback.assert_called_once()
        session.commit.assert_not_called()

    def test_unexpected_error_becomes_internal_error_ack(self, gateway, session, monkeypatch):
        def explode(**kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(message_service, "send_message", explode)
        gateway.connect("a1", "tok-alice", session)

        ack = gateway.send_message("a1", {"conversationId": 10, "content": "hi"}, session)
        assert ack["error"]["code"] == ErrorCode.INTERNAL_ERROR

    def test_invalid_payload_types(self, gateway, session):
        gateway.connect("a1", "tok-alice", session)
        ack = gateway.send_message("a1", {"conversationId": "ten", "content": "hi"}, session)
        assert ack["error"]["code"] == ErrorCode.INVALID_FIELD
        assert ack["error"]["field"] == "conversationId"

        ack = gateway.send_message("a1", None, session)
        assert ack["error"]["code"] == ErrorCode.MISSING_FIELD

    def test_unchanged_status_is_not_broadcast(self, gateway, emit, session, monkeypatch):
        monkeypatch.setattr(
            message_service,
            "update_message_status",
            lambda **kw: {
                "message_id": kw["message_id"],
                "conversation_id": 10,
                "user_id": kw["user_id"],
                "status": "read",
                "changed": False,
            },
        )
        gateway.connect("a1", "tok-alice", session)
        gateway.connect("b1", "tok-bob", session)
        emit.sent.clear()

        ack = gateway.report_status("b1", {"messageId": 5}, "delivered", session)

        assert ack == {"success": True, "messageId": 5, "status": "read"}
        assert emit.sent == []

    def test_services_receive_the_session(self, gateway, session, monkeypatch):
        calls: list[dict] = []

        def record_send(**kwargs):
            calls.append(kwargs)
            return {"id": 1, "conversation_id": kwargs["conversation_id"]}

        def record_status(**kwargs):
            calls.append(kwargs)
            return {
                "message_id": kwargs["message_id"],
                "conversation_id": 10,
                "user_id": kwargs["user_id"],
                "status": kwargs["status"],
                "changed": True,
            }

        monkeypatch.setattr(message_service, "send_message", record_send)
        monkeypatch.setattr(message_service, "update_message_status", record_status)
        gateway.connect("a1", "tok-alice", session)

        assert gateway.send_message("a1", {"conversationId": 10, "content": "hi"}, session)["success"]
        assert gateway.report_status("a1", {"messageId": 1}, "read", session)["success"]
        assert [c["session"] for c in calls] == [session, session]
        assert calls[1]["status"] == "read"


class TestPresenceOrdering:

    def test_reconnect_during_last_disconnect_ends_online(self, gateway, session):
        USERS[1].status = PresenceStatus.OFFLINE
        gateway.connect("a1", "tok-alice", session)
        racer: dict[str, threading.Thread] = {}

        def get_user(model, pk):
            # A new connection for the same user arrives between the
            # registry removal and the OFFLINE write.
            if "thread" not in racer:
                racer["thread"] = threading.Thread(
                    target=gateway.connect, args=("a2", "tok-alice", session)
                )
                racer["thread"].start()
                racer["thread"].join(timeout=0.2)
            return USERS.get(pk)

        session.get.side_effect = get_user
        gateway.disconnect("a1", session)
        racer["thread"].join(timeout=2)

        assert gateway.registry.sids_for_user(1) == ["a2"]
        assert USERS[1].status == PresenceStatus.ONLINE

    def test_presence_set_and_disconnect_leave_no_locks(self, gateway, session):
        gateway.connect("a1", "tok-alice", session)
        assert gateway.set_presence("a1", {"status": "busy"}, session)["success"]
        gateway.disconnect("a1", session)
        assert gateway.registry.lock_count() == 0
