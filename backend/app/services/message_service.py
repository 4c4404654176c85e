"""
services/message_service.py — Message delivery engine.

Invariants enforced here:
  - A message is only persisted together with one MessageStatus row per
    participant (sender starts at `sent`, everyone else at `pending`).
    If creating those rows fails, the message insert is rolled back.
  - Delivery status only moves forward: pending/sent (0) < delivered (1)
    < read (2). Advancing is a single conditional UPDATE on status_rank, so
    two devices reporting at once cannot lose an update or move a row back.
  - delivered_at / read_at are written once; reading backfills delivered_at.
  - Reactions never touch the delivery columns.
  - Content is an opaque blob. It is checked for emptiness and nothing else.

Authorization rules:
  - Sending, status updates, reactions and history: participants only.
  - Editing: original sender only.
  - Deleting (soft): sender, or a participant with the admin role.

Layer rules:
  - No Flask imports. Plain functions with a SQLAlchemy session parameter.
  - Commits are the caller's responsibility; only flush here (send_message
    additionally rolls back on failure so no half-written message survives).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from backend.app.errors import ErrorCode, ForbiddenError, NotFoundError, ValidationError
from backend.app.models.auth_session import as_utc
from backend.app.models.conversation import Conversation
from backend.app.models.message import Message, MessageType
from backend.app.models.message_status import DeliveryStatus, MessageStatus
from backend.app.models.user import User
from backend.app.services import membership_service

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


# ── Private helpers ────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _require_content(content) -> None:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError(
            "Message content must not be empty.",
            code=ErrorCode.EMPTY_CONTENT,
            field="content",
        )


def _get_message_or_404(message_id: int, session: Session) -> Message:
    message = session.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} does not exist.")
    return message


def _parse_message_type(value) -> MessageType:
    try:
        return MessageType(value or MessageType.TEXT.value)
    except ValueError:
        raise ValidationError(
            f"Unknown message type {value!r}.",
            code=ErrorCode.INVALID_FIELD,
            field="message_type",
        )


def _aggregate_statuses(statuses: list[MessageStatus]) -> dict:
    delivered_by: list[int] = []
    read_by: list[int] = []
    reactions: dict[str, list[int]] = {}

    for row in statuses:
        if row.status_rank >= DeliveryStatus.DELIVERED.rank:
            delivered_by.append(row.user_id)
        if row.status_rank >= DeliveryStatus.READ.rank:
            read_by.append(row.user_id)
        if row.reaction is not None:
            reactions.setdefault(row.reaction, []).append(row.user_id)

    return {
        "delivered_by_users": delivered_by,
        "read_by_users": read_by,
        "reactions": reactions,
    }


def _build_message_dict(
        message: Message,
        statuses: list[MessageStatus] | None = None,
        sender_username: str | None = None,
) -> dict:
    """Serialises a Message with its aggregated per-recipient status."""
    if statuses is None:
        statuses = list(message.statuses)
    if sender_username is None:
        sender_username = message.sender.username if message.sender is not None else None

    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "sender_username": sender_username,
        "content": message.content_encrypted,
        "message_type": message.message_type.value,
        "reply_to_id": message.reply_to_id,
        "metadata": message.meta,
        "is_edited": message.is_edited,
        "is_deleted": message.is_deleted,
        "created_at": _isoformat(message.created_at),
        "updated_at": _isoformat(message.updated_at),
        "status": _aggregate_statuses(statuses),
    }


def _build_status_dict(row: MessageStatus, conversation_id: int, changed: bool) -> dict:
    return {
        "message_id": row.message_id,
        "conversation_id": conversation_id,
        "user_id": row.user_id,
        "status": row.status.value,
        "delivered_at": _isoformat(row.delivered_at),
        "read_at": _isoformat(row.read_at),
        "reaction": row.reaction,
        "reacted_at": _isoformat(row.reacted_at),
        "changed": changed,
    }


def _create_status_rows(
        message: Message,
        recipient_ids: list[int],
        session: Session,
) -> list[MessageStatus]:
    """One row per participant: the sender at `sent`, everybody else `pending`."""
    now = _utcnow()
    rows = []
    for user_id in recipient_ids:
        initial = DeliveryStatus.SENT if user_id == message.sender_id else DeliveryStatus.PENDING
        rows.append(
            MessageStatus(
                message_id=message.id,
                user_id=user_id,
                status=initial,
                status_rank=initial.rank,
                created_at=now,
                updated_at=now,
            )
        )
    session.add_all(rows)
    session.flush()
    return rows


def _dialect_insert(session: Session):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def _ensure_status_row(message_id: int, user_id: int, session: Session) -> None:
    """
    Insert-if-absent for the (message, user) row. The UNIQUE constraint is
    the arbiter: a concurrent creator makes this a no-op, never a duplicate.
    """
    now = _utcnow()
    insert = _dialect_insert(session)

    if insert is not None:
        session.execute(
            insert(MessageStatus)
            .values(
                message_id=message_id,
                user_id=user_id,
                status=DeliveryStatus.PENDING,
                status_rank=DeliveryStatus.PENDING.rank,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        return

    exists = session.execute(
        select(MessageStatus.id).where(
            MessageStatus.message_id == message_id,
            MessageStatus.user_id == user_id,
        )
    ).first()
    if exists is None:
        session.add(
            MessageStatus(
                message_id=message_id,
                user_id=user_id,
                status=DeliveryStatus.PENDING,
                status_rank=DeliveryStatus.PENDING.rank,
                created_at=now,
                updated_at=now,
            )
        )
        session.flush()


def _reload_status_row(message_id: int, user_id: int, session: Session) -> MessageStatus:
    return session.execute(
        select(MessageStatus)
        .where(
            MessageStatus.message_id == message_id,
            MessageStatus.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    ).scalar_one()


# ── Public service functions ───────────────────────────────────────────────

def send_message(
        conversation_id: int,
        sender_id: int,
        content: str,
        session: Session,
        message_type: str | None = None,
        reply_to_id: int | None = None,
        metadata: dict | None = None,
) -> dict:
    """
    Persists a message and its per-participant status rows as one unit.

    Raises:
      ValidationError(CONVERSATION_NOT_FOUND) — unknown conversation
      ForbiddenError(NOT_A_PARTICIPANT)       — sender not in the conversation
      ValidationError(EMPTY_CONTENT)          — blank content
      ValidationError(INVALID_REPLY_TARGET)   — reply_to_id not in this conversation

    Returns: message dict (see _build_message_dict).
    """
    membership_service.require_participant(conversation_id, sender_id, session)
    _require_content(content)
    kind = _parse_message_type(message_type)

    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError(
            "metadata must be an object.",
            code=ErrorCode.INVALID_FIELD,
            field="metadata",
        )

    if reply_to_id is not None:
        parent = session.get(Message, reply_to_id)
        if parent is None or parent.conversation_id != conversation_id:
            raise ValidationError(
                "reply_to_id must reference a message in the same conversation.",
                code=ErrorCode.INVALID_REPLY_TARGET,
                field="reply_to_id",
            )

    sender = session.get(User, sender_id)
    recipient_ids = membership_service.participant_ids(conversation_id, session)

    try:
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content_encrypted=content,
            message_type=kind,
            reply_to_id=reply_to_id,
            meta=metadata,
        )
        session.add(message)
        session.flush()  # populate message.id before creating status rows

        rows = _create_status_rows(message, recipient_ids, session)

        conversation = session.get(Conversation, conversation_id)
        conversation.last_message_at = message.created_at
        session.flush()
    except Exception:
        session.rollback()
        logger.exception(
            "Failed to persist message for conversation id=%s sender id=%s; rolled back",
            conversation_id,
            sender_id,
        )
        raise

    return _build_message_dict(
        message,
        statuses=rows,
        sender_username=sender.username if sender is not None else None,
    )


def update_message_status(
        message_id: int,
        user_id: int,
        status: str,
        session: Session,
) -> dict:
    """
    Advances the caller's status for a message if, and only if, the target
    ranks above the current value. A lower or equal target is a silent no-op
    that returns the unchanged row with changed=False.

    Raises:
      NotFoundError(MESSAGE_NOT_FOUND)
      ForbiddenError(NOT_A_PARTICIPANT)
      ValidationError(INVALID_FIELD) — unknown status value
    """
    try:
        target = DeliveryStatus(status)
    except ValueError:
        raise ValidationError(
            f"Unknown status {status!r}.",
            code=ErrorCode.INVALID_FIELD,
            field="status",
        )

    message = _get_message_or_404(message_id, session)
    membership_service.require_participant(message.conversation_id, user_id, session)

    _ensure_status_row(message_id, user_id, session)

    now = _utcnow()
    values = {
        "status": target,
        "status_rank": target.rank,
        "updated_at": now,
        "delivered_at": func.coalesce(MessageStatus.delivered_at, now),
    }
    if target is DeliveryStatus.READ:
        values["read_at"] = func.coalesce(MessageStatus.read_at, now)

    # Compare-and-swap on the ordinal. Nothing is read before this write.
    result = session.execute(
        update(MessageStatus)
        .where(
            MessageStatus.message_id == message_id,
            MessageStatus.user_id == user_id,
            MessageStatus.status_rank < target.rank,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount == 1

    row = _reload_status_row(message_id, user_id, session)
    return _build_status_dict(row, message.conversation_id, changed)


def add_reaction(
        message_id: int,
        user_id: int,
        emoji: str,
        session: Session,
) -> dict:
    """
    Sets (or replaces) the caller's reaction. Re-sending the same emoji is a
    no-op. Delivery status, delivered_at and read_at are left alone.
    """
    if not isinstance(emoji, str) or not emoji.strip():
        raise ValidationError(
            "Reaction must not be empty.",
            code=ErrorCode.INVALID_FIELD,
            field="emoji",
        )
    emoji = emoji.strip()

    message = _get_message_or_404(message_id, session)
    if message.is_deleted:
        raise ValidationError(
            "Cannot react to a deleted message.",
            code=ErrorCode.MESSAGE_DELETED,
        )
    membership_service.require_participant(message.conversation_id, user_id, session)

    _ensure_status_row(message_id, user_id, session)

    result = session.execute(
        update(MessageStatus)
        .where(
            MessageStatus.message_id == message_id,
            MessageStatus.user_id == user_id,
            or_(MessageStatus.reaction.is_(None), MessageStatus.reaction != emoji),
        )
        .values(reaction=emoji, reacted_at=_utcnow(), updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )

    row = _reload_status_row(message_id, user_id, session)
    return _build_status_dict(row, message.conversation_id, result.rowcount == 1)


def edit_message(
        message_id: int,
        user_id: int,
        content: str,
        session: Session,
) -> dict:
    """
    Replaces the content of a message in place and flags it as edited.

    Raises:
      NotFoundError(MESSAGE_NOT_FOUND)
      ForbiddenError(FORBIDDEN)          — caller is not the sender
      ValidationError(MESSAGE_DELETED)   — message was soft-deleted
      ValidationError(EMPTY_CONTENT)
    """
    message = _get_message_or_404(message_id, session)

    if message.sender_id != user_id:
        raise ForbiddenError("Only the sender may edit this message.")
    if message.is_deleted:
        raise ValidationError(
            "A deleted message cannot be edited.",
            code=ErrorCode.MESSAGE_DELETED,
        )
    _require_content(content)

    message.content_encrypted = content
    message.is_edited = True
    session.flush()

    return _build_message_dict(message)


def delete_message(message_id: int, user_id: int, session: Session) -> dict:
    """
    Soft-deletes a message. Deleting an already-deleted message succeeds.

    Raises:
      NotFoundError(MESSAGE_NOT_FOUND)
      ForbiddenError(FORBIDDEN) — neither the sender nor a conversation admin
    """
    message = _get_message_or_404(message_id, session)

    if message.sender_id != user_id and not membership_service.is_admin(
            message.conversation_id, user_id, session
    ):
        raise ForbiddenError("Only the sender or a conversation admin may delete this message.")

    if not message.is_deleted:
        message.is_deleted = True
        session.flush()

    return {
        "success": True,
        "message_id": message.id,
        "conversation_id": message.conversation_id,
    }


def get_conversation_messages(
        conversation_id: int,
        user_id: int,
        session: Session,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        after_id: int | None = None,
) -> dict:
    """
    Returns a page of non-deleted messages in ascending (created_at, id)
    order, plus the total number of visible messages in the conversation.

    Pagination: `offset` for simple paging; `after_id` for a keyset cursor
    that is stable under concurrent inserts. Both may be combined.

    Raises:
      ValidationError(CONVERSATION_NOT_FOUND)
      ForbiddenError(NOT_A_PARTICIPANT)
      ValidationError(INVALID_FIELD) — after_id is not a message of this conversation
    """
    membership_service.require_participant(conversation_id, user_id, session)

    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))

    visible = and_(
        Message.conversation_id == conversation_id,
        Message.is_deleted.is_(False),
    )

    total = session.execute(
        select(func.count(Message.id)).where(visible)
    ).scalar_one()

    stmt = (
        select(Message)
        .where(visible)
        .options(selectinload(Message.statuses), selectinload(Message.sender))
        .order_by(Message.created_at.asc(), Message.id.asc())
    )

    if after_id is not None:
        cursor = session.get(Message, after_id)
        if cursor is None or cursor.conversation_id != conversation_id:
            raise ValidationError(
                "after_id must reference a message in this conversation.",
                code=ErrorCode.INVALID_FIELD,
                field="after_id",
            )
        stmt = stmt.where(
            or_(
                Message.created_at > cursor.created_at,
                and_(Message.created_at == cursor.created_at, Message.id > cursor.id),
            )
        )

    # One extra row tells us whether another page exists.
    rows = list(session.execute(stmt.offset(offset).limit(limit + 1)).scalars().all())
    has_more = len(rows) > limit
    rows = rows[:limit]

    return {
        "messages": [_build_message_dict(m) for m in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": has_more,
    }
