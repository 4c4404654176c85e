"""
realtime/gateway.py — Connection gateway.

Authorises real-time connections, tracks presence and relays typing,
message and status events. Transport-agnostic: it is handed an
`emit(event, payload, sid)` callable and never imports Socket.IO itself
(socket_events.py binds it to Flask-SocketIO).

Event vocabulary, server → client:
  presence.changed         {userId, status, lastSeenAt}
  typing.changed           {userId, username, conversationId, isTyping}
  message.received         full message dict (same shape as the REST API)
  message.updated          full message dict after an edit
  message.deleted          {messageId, conversationId}
  message.status.changed   {messageId, conversationId, status, by}
  message.reaction.changed {messageId, conversationId, userId, emoji}

Acknowledgements to the caller are {"success": true, ...} or
{"success": false, "error": {"code", "message", ...}}. A request is never
dropped silently.

Fan-out is per recipient: a failed emit to one stale connection is logged
and skipped, and does not affect anybody else.

The gateway plays the role routes play for HTTP: it commits after a
successful service call and rolls back after a failed one, and only emits
after the commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from marshmallow import Schema
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.user import PresenceStatus, User
from backend.app.realtime.registry import Connection, ConnectionRegistry
from backend.app.schemas.message_schema import (
    ConversationJoinEventSchema,
    MessageRefEventSchema,
    PresenceSetEventSchema,
    SendEventSchema,
    TypingEventSchema,
)
from backend.app.services import auth_service, membership_service, message_service

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, dict, str], None]


def _error_ack(code: str, message: str, field: str | None = None) -> dict:
    error = {"code": code, "message": message}
    if field is not None:
        error["field"] = field
    return {"success": False, "error": error}


def _app_error_ack(error: AppError) -> dict:
    return {"success": False, "error": error.to_dict()["error"]}


def _schema_error_ack(error: SchemaValidationError) -> dict:
    messages = error.messages
    if isinstance(messages, dict) and messages:
        field, problems = next(iter(messages.items()))
        text = problems[0] if isinstance(problems, list) and problems else str(problems)
        code = (
            ErrorCode.MISSING_FIELD
            if str(text).startswith("Missing data for required field")
            else ErrorCode.INVALID_FIELD
        )
        return _error_ack(code, str(text), field=None if field == "_schema" else field)
    return _error_ack(ErrorCode.INVALID_FIELD, "Invalid payload.")


class Gateway:

    def __init__(self, emit: EmitFn, registry: ConnectionRegistry | None = None) -> None:
        self._emit = emit
        self.registry = registry or ConnectionRegistry()

    # ── Fan-out ────────────────────────────────────────────────────────────

    def _fanout(self, event: str, payload: dict, sids: list[str]) -> int:
        """Emits to each sid independently. Returns how many emits succeeded."""
        delivered = 0
        for sid in sids:
            try:
                self._emit(event, payload, sid)
                delivered += 1
            except Exception:
                logger.warning("Dropped %s for connection %s", event, sid, exc_info=True)
        return delivered

    def _room_sids(self, conversation_id: int, exclude_sid: str | None = None) -> list[str]:
        return [s for s in self.registry.sids_in_room(conversation_id) if s != exclude_sid]

    def _user_sids(self, user_ids: list[int]) -> list[str]:
        sids: list[str] = []
        for user_id in user_ids:
            sids.extend(self.registry.sids_for_user(user_id))
        return sids

    # ── Connection lifecycle ───────────────────────────────────────────────

    def connect(self, sid: str, raw_token: str | None, session: Session) -> Connection:
        """
        Authorises and registers a connection, then joins the rooms of every
        conversation the user belongs to.

        Raises UnauthorizedError before anything is registered if the token
        is missing, invalid, expired, or names an inactive account.
        """
        user = auth_service.authenticate_access_token(raw_token, session)

        with self.registry.presence_lock(user.id):
            connection, is_first = self.registry.add(sid, user.id, user.username)
            for conversation_id in membership_service.conversation_ids_for_user(user.id, session):
                self.registry.join(sid, conversation_id)

            logger.info(
                "Connection %s opened for user id=%s (%d rooms)",
                sid,
                user.id,
                len(connection.rooms),
            )

            if is_first:
                self._change_presence(user, PresenceStatus.ONLINE, session)
        return connection

    def disconnect(self, sid: str, session: Session) -> None:
        known = self.registry.get(sid)
        if known is None:
            return

        with self.registry.presence_lock(known.user_id):
            connection, is_last = self.registry.remove(sid)
            if connection is None:
                return

            logger.info("Connection %s closed for user id=%s", sid, connection.user_id)

            if is_last:
                user = session.get(User, connection.user_id)
                if user is not None:
                    self._change_presence(user, PresenceStatus.OFFLINE, session)

    # ── Presence ───────────────────────────────────────────────────────────

    def _change_presence(self, user: User, status: PresenceStatus, session: Session) -> None:
        now = datetime.now(timezone.utc)
        user.status = status
        if status == PresenceStatus.OFFLINE:
            user.last_seen_at = now
        session.commit()

        payload = {
            "userId": user.id,
            "status": status.value,
            "lastSeenAt": now.isoformat() if status == PresenceStatus.OFFLINE else None,
        }
        watchers = membership_service.co_participant_ids(user.id, session)
        self._fanout("presence.changed", payload, self._user_sids(watchers))

    def set_presence(self, sid: str, data: dict | None, session: Session) -> dict:
        """presence.set{status}; presence.online / presence.offline map onto this."""
        connection = self.registry.get(sid)
        if connection is None:
            return _error_ack(ErrorCode.TOKEN_MISSING, "Not connected.")

        payload = self._load(PresenceSetEventSchema(), data)
        if "error" in payload:
            return payload

        with self.registry.presence_lock(connection.user_id):
            user = session.get(User, connection.user_id)
            if user is None:
                return _error_ack(ErrorCode.USER_NOT_FOUND, "User not found.")
            self._change_presence(user, PresenceStatus(payload["data"]["status"]), session)
        return {"success": True, "status": payload["data"]["status"]}

    # ── Rooms ──────────────────────────────────────────────────────────────

    def join_conversation(self, sid: str, data: dict | None, session: Session) -> dict:
        connection = self.registry.get(sid)
        if connection is None:
            return _error_ack(ErrorCode.TOKEN_MISSING, "Not connected.")

        payload = self._load(ConversationJoinEventSchema(), data)
        if "error" in payload:
            return payload
        conversation_id = payload["data"]["conversation_id"]

        try:
            membership_service.require_participant(conversation_id, connection.user_id, session)
        except AppError as exc:
            return _app_error_ack(exc)

        self.registry.join(sid, conversation_id)
        return {"success": True, "conversationId": conversation_id}

    # ── Typing ─────────────────────────────────────────────────────────────

    def typing(self, sid: str, data: dict | None) -> dict:
        """
        Relays a typing flag to the other participants connected to the
        conversation. Nothing is persisted or de-duplicated.
        """
        connection = self.registry.get(sid)
        if connection is None:
            return _error_ack(ErrorCode.TOKEN_MISSING, "Not connected.")

        payload = self._load(TypingEventSchema(), data)
        if "error" in payload:
            return payload
        conversation_id = payload["data"]["conversation_id"]

        if conversation_id not in connection.rooms:
            return _error_ack(
                ErrorCode.NOT_A_PARTICIPANT,
                "You are not a participant in this conversation.",
            )

        own_sids = set(self.registry.sids_for_user(connection.user_id))
        recipients = [s for s in self.registry.sids_in_room(conversation_id) if s not in own_sids]
        self._fanout(
            "typing.changed",
            {
                "userId": connection.user_id,
                "username": connection.username,
                "conversationId": conversation_id,
                "isTyping": payload["data"]["is_typing"],
            },
            recipients,
        )
        return {"success": True}

    # ── Messages ───────────────────────────────────────────────────────────

    def send_message(self, sid: str, data: dict | None, session: Session) -> dict:
        """
        message.send → persists via the delivery engine, acknowledges the
        sender with the real message id, and fans message.received out to
        every other connection in the conversation.
        """
        connection = self.registry.get(sid)
        if connection is None:
            return _error_ack(ErrorCode.TOKEN_MISSING, "Not connected.")

        payload = self._load(SendEventSchema(), data)
        if "error" in payload:
            return payload
        fields = payload["data"]

        message = self._run(
            session,
            message_service.send_message,
            conversation_id=fields["conversation_id"],
            sender_id=connection.user_id,
            content=fields["content"],
            message_type=fields["message_type"],
            reply_to_id=fields["reply_to_id"],
            metadata=fields["metadata"],
        )
        if "error" in message:
            return message

        dto = message["data"]
        self.publish_message(dto, exclude_sid=sid)
        return {"success": True, "messageId": dto["id"], "message": dto}

    def report_status(self, sid: str, data: dict | None, status: str, session: Session) -> dict:
        """message.delivered / message.read. Only a real advance is broadcast."""
        connection = self.registry.get(sid)
        if connection is None:
            return _error_ack(ErrorCode.TOKEN_MISSING, "Not connected.")

        payload = self._load(MessageRefEventSchema(), data)
        if "error" in payload:
            return payload

        result = self._run(
            session,
            message_service.update_message_status,
            message_id=payload["data"]["message_id"],
            user_id=connection.user_id,
            status=status,
        )
        if "error" in result:
            return result

        dto = result["data"]
        if dto["changed"]:
            self.publish_status(dto, exclude_sid=sid)
        return {"success": True, "messageId": dto["message_id"], "status": dto["status"]}

    # ── Publishing (also used by the REST routes) ──────────────────────────

    def publish_message(self, message: dict, exclude_sid: str | None = None) -> int:
        return self._fanout(
            "message.received",
            message,
            self._room_sids(message["conversation_id"], exclude_sid),
        )

    def publish_message_updated(self, message: dict) -> int:
        return self._fanout(
            "message.updated",
            message,
            self._room_sids(message["conversation_id"]),
        )

    def publish_message_deleted(self, message_id: int, conversation_id: int) -> int:
        return self._fanout(
            "message.deleted",
            {"messageId": message_id, "conversationId": conversation_id},
            self._room_sids(conversation_id),
        )

    def publish_status(self, status: dict, exclude_sid: str | None = None) -> int:
        return self._fanout(
            "message.status.changed",
            {
                "messageId": status["message_id"],
                "conversationId": status["conversation_id"],
                "status": status["status"],
                "by": status["user_id"],
            },
            self._room_sids(status["conversation_id"], exclude_sid),
        )

    def publish_reaction(self, reaction: dict) -> int:
        return self._fanout(
            "message.reaction.changed",
            {
                "messageId": reaction["message_id"],
                "conversationId": reaction["conversation_id"],
                "userId": reaction["user_id"],
                "emoji": reaction["reaction"],
            },
            self._room_sids(reaction["conversation_id"]),
        )

    # ── Helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _load(schema: Schema, data: dict | None) -> dict:
        try:
            return {"data": schema.load(data if isinstance(data, dict) else {})}
        except SchemaValidationError as exc:
            return _schema_error_ack(exc)

    @staticmethod
    def _run(session: Session, operation: Callable[..., dict], **kwargs) -> dict:
        """Runs one service call as a unit of work and folds failures into an ack."""
        try:
            result = operation(session=session, **kwargs)
            session.commit()
            return {"data": result}
        except AppError as exc:
            session.rollback()
            return _app_error_ack(exc)
        except Exception:
            session.rollback()
            logger.exception("Unhandled error in %s", operation.__name__)
            return _error_ack(
                ErrorCode.INTERNAL_ERROR,
                "An unexpected error occurred. Please try again later.",
            )
