"""
schemas/message_schema.py — Marshmallow schemas for message endpoints and
real-time event payloads.

REST bodies use snake_case. Real-time payloads use camelCase on the wire
(conversationId, isTyping, messageId, replyTo); `data_key` maps them onto
the same snake_case names the services take.

Validation responsibility:
  - This file: types, ranges, allowed enum values.
  - services/message_service.py: EMPTY_CONTENT, membership, reply target,
    sender/admin checks (all need content rules or a DB lookup).
"""

from __future__ import annotations

from marshmallow import EXCLUDE, Schema, fields, validate

from backend.app.models.message import MessageType
from backend.app.models.message_status import DeliveryStatus
from backend.app.models.user import PresenceStatus

_MESSAGE_TYPES = [t.value for t in MessageType]
_REPORTABLE_STATUSES = [DeliveryStatus.DELIVERED.value, DeliveryStatus.READ.value]
_PRESENCE_STATUSES = [s.value for s in PresenceStatus]


def _positive_id(**kwargs) -> fields.Int:
    return fields.Int(strict=True, validate=validate.Range(min=1), **kwargs)


# ── REST ───────────────────────────────────────────────────────────────────

class SendMessageSchema(Schema):
    """POST /messages"""

    conversation_id = _positive_id(required=True)
    # Opaque ciphertext; the service only checks that it is non-blank.
    content = fields.Str(required=True)
    message_type = fields.Str(
        load_default=MessageType.TEXT.value,
        validate=validate.OneOf(_MESSAGE_TYPES),
    )
    reply_to_id = _positive_id(load_default=None, allow_none=True)
    metadata = fields.Dict(load_default=None, allow_none=True)


class EditMessageSchema(Schema):
    """PATCH /messages/:id"""

    content = fields.Str(required=True)


class StatusUpdateSchema(Schema):
    """POST /messages/:id/status — only forward-moving reports are accepted."""

    status = fields.Str(required=True, validate=validate.OneOf(_REPORTABLE_STATUSES))


class ReactionSchema(Schema):
    """POST /messages/:id/reactions"""

    emoji = fields.Str(required=True, validate=validate.Length(min=1, max=16))


class HistoryQuerySchema(Schema):
    """GET /messages/conversation/:id query string."""

    limit = fields.Int(load_default=50, validate=validate.Range(min=1, max=100))
    offset = fields.Int(load_default=0, validate=validate.Range(min=0))
    after_id = fields.Int(load_default=None, allow_none=True, validate=validate.Range(min=1))


# ── Real-time payloads ─────────────────────────────────────────────────────
#
# Unknown keys are dropped rather than rejected: clients attach their own
# bookkeeping (e.g. a temporary id) to outgoing events.
# ──────────────────────────────────────────────────────────────────────────

class _EventSchema(Schema):
    class Meta:
        unknown = EXCLUDE


class TypingEventSchema(_EventSchema):
    """typing.set"""

    conversation_id = _positive_id(required=True, data_key="conversationId")
    is_typing = fields.Bool(required=True, data_key="isTyping")


class SendEventSchema(_EventSchema):
    """message.send"""

    conversation_id = _positive_id(required=True, data_key="conversationId")
    content = fields.Str(required=True)
    message_type = fields.Str(
        load_default=MessageType.TEXT.value,
        data_key="type",
        validate=validate.OneOf(_MESSAGE_TYPES),
    )
    reply_to_id = _positive_id(load_default=None, allow_none=True, data_key="replyTo")
    metadata = fields.Dict(load_default=None, allow_none=True)


class MessageRefEventSchema(_EventSchema):
    """message.delivered / message.read"""

    message_id = _positive_id(required=True, data_key="messageId")


class PresenceSetEventSchema(_EventSchema):
    """presence.set"""

    status = fields.Str(required=True, validate=validate.OneOf(_PRESENCE_STATUSES))


class ConversationJoinEventSchema(_EventSchema):
    """conversation.join"""

    conversation_id = _positive_id(required=True, data_key="conversationId")
