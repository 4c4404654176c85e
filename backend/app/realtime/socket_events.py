"""
realtime/socket_events.py — Flask-SocketIO bindings for the gateway.

Handlers are thin: pull the sid and payload off the Socket.IO request, hand
them to the Gateway stored in app.extensions["gateway"], and return its
acknowledgement. The access token is presented at connection time only,
either as auth={"token": ...} or as an "Authorization: Bearer ..." header;
an invalid token refuses the connection before any event is exchanged.
"""

from __future__ import annotations

import logging

from flask import current_app, request
from flask_socketio import SocketIO

from backend.app.errors import UnauthorizedError
from backend.app.extensions import db
from backend.app.middleware.auth_middleware import extract_bearer_token
from backend.app.realtime.gateway import Gateway

logger = logging.getLogger(__name__)


def get_gateway() -> Gateway:
    return current_app.extensions["gateway"]


def _connection_token(auth) -> str | None:
    if isinstance(auth, dict) and auth.get("token"):
        return str(auth["token"])
    header = request.headers.get("Authorization")
    if header:
        try:
            return extract_bearer_token(header)
        except UnauthorizedError:
            return None
    return None


_registered: set[int] = set()


def register_socket_handlers(socketio: SocketIO) -> None:
    """
    Attaches the event handlers to `socketio`. Must run before
    socketio.init_app() so every app created afterwards picks them up;
    repeated calls for the same SocketIO object are ignored.
    """
    if id(socketio) in _registered:
        return
    _registered.add(id(socketio))

    @socketio.on("connect")
    def on_connect(auth=None):
        try:
            get_gateway().connect(request.sid, _connection_token(auth), db.session)
        except UnauthorizedError as exc:
            db.session.rollback()
            logger.info("Refused connection %s: %s", request.sid, exc.code)
            raise ConnectionRefusedError(exc.to_dict()["error"])

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        get_gateway().disconnect(request.sid, db.session)

    @socketio.on("presence.online")
    def on_presence_online(data=None):
        return get_gateway().set_presence(request.sid, {"status": "online"}, db.session)

    @socketio.on("presence.offline")
    def on_presence_offline(data=None):
        return get_gateway().set_presence(request.sid, {"status": "offline"}, db.session)

    @socketio.on("presence.set")
    def on_presence_set(data=None):
        return get_gateway().set_presence(request.sid, data, db.session)

    @socketio.on("conversation.join")
    def on_conversation_join(data=None):
        return get_gateway().join_conversation(request.sid, data, db.session)

    @socketio.on("typing.set")
    def on_typing(data=None):
        return get_gateway().typing(request.sid, data)

    @socketio.on("message.send")
    def on_message_send(data=None):
        return get_gateway().send_message(request.sid, data, db.session)

    @socketio.on("message.delivered")
    def on_message_delivered(data=None):
        return get_gateway().report_status(request.sid, data, "delivered", db.session)

    @socketio.on("message.read")
    def on_message_read(data=None):
        return get_gateway().report_status(request.sid, data, "read", db.session)
