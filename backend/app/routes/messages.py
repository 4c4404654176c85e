"""
routes/messages.py — Message route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return the envelope.
  - After the commit, the change is published through the real-time
    gateway exactly as if it had arrived over a socket.

Endpoints (url_prefix=/api/v1/messages, all require a bearer token):
  GET    /conversation/:id        → 200  history page
  POST   /                        → 201  send
  PATCH  /:id                     → 200  edit (sender only)
  DELETE /:id                     → 200  soft delete (sender or admin)
  POST   /:id/status              → 200  report delivered / read
  POST   /:id/reactions           → 200  set reaction
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.realtime.socket_events import get_gateway
from backend.app.schemas.message_schema import (
    EditMessageSchema,
    HistoryQuerySchema,
    ReactionSchema,
    SendMessageSchema,
    StatusUpdateSchema,
)
from backend.app.services import message_service

messages_bp = Blueprint("messages", __name__)


def _json_body() -> dict:
    return request.get_json(force=True, silent=True) or {}


@messages_bp.route("/conversation/<int:conversation_id>", methods=["GET"])
@require_auth
def get_conversation_messages(conversation_id: int):
    """GET /messages/conversation/:id?limit=&offset=&after_id="""
    query = HistoryQuerySchema().load(request.args.to_dict())
    result = message_service.get_conversation_messages(
        conversation_id=conversation_id,
        user_id=g.user_id,
        limit=query["limit"],
        offset=query["offset"],
        after_id=query["after_id"],
        session=db.session,
    )
    return jsonify({"status": "success", "data": result}), 200


@messages_bp.route("", methods=["POST"])
@require_auth
def send_message():
    data = SendMessageSchema().load(_json_body())
    result = message_service.send_message(
        conversation_id=data["conversation_id"],
        sender_id=g.user_id,
        content=data["content"],
        message_type=data["message_type"],
        reply_to_id=data["reply_to_id"],
        metadata=data["metadata"],
        session=db.session,
    )
    db.session.commit()
    get_gateway().publish_message(result)
    return jsonify({"status": "success", "data": result}), 201


@messages_bp.route("/<int:message_id>", methods=["PATCH"])
@require_auth
def edit_message(message_id: int):
    data = EditMessageSchema().load(_json_body())
    result = message_service.edit_message(
        message_id=message_id,
        user_id=g.user_id,
        content=data["content"],
        session=db.session,
    )
    db.session.commit()
    get_gateway().publish_message_updated(result)
    return jsonify({"status": "success", "data": result}), 200


@messages_bp.route("/<int:message_id>", methods=["DELETE"])
@require_auth
def delete_message(message_id: int):
    result = message_service.delete_message(
        message_id=message_id,
        user_id=g.user_id,
        session=db.session,
    )
    db.session.commit()
    get_gateway().publish_message_deleted(result["message_id"], result["conversation_id"])
    return jsonify({"status": "success", "data": result}), 200


@messages_bp.route("/<int:message_id>/status", methods=["POST"])
@require_auth
def update_status(message_id: int):
    """POST /messages/:id/status — a lower or equal status is a no-op (changed=false)."""
    data = StatusUpdateSchema().load(_json_body())
    result = message_service.update_message_status(
        message_id=message_id,
        user_id=g.user_id,
        status=data["status"],
        session=db.session,
    )
    db.session.commit()
    if result["changed"]:
        get_gateway().publish_status(result)
    return jsonify({"status": "success", "data": result}), 200


@messages_bp.route("/<int:message_id>/reactions", methods=["POST"])
@require_auth
def add_reaction(message_id: int):
    data = ReactionSchema().load(_json_body())
    result = message_service.add_reaction(
        message_id=message_id,
        user_id=g.user_id,
        emoji=data["emoji"],
        session=db.session,
    )
    db.session.commit()
    if result["changed"]:
        get_gateway().publish_reaction(result)
    return jsonify({"status": "success", "data": result}), 200
