"""
services/membership_service.py — Conversation membership lookups.

Conversation and participant CRUD are owned elsewhere; this module is the
read-only interface the delivery engine and the gateway use to answer
membership questions.

Layer rules:
  - No Flask imports. Plain functions with a SQLAlchemy session parameter.
  - Nothing here writes.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import ErrorCode, ForbiddenError, ValidationError
from backend.app.models.conversation import (
    Conversation,
    ConversationParticipant,
    ParticipantRole,
)
from backend.app.models.user import User


def conversation_exists(conversation_id: int, session: Session) -> bool:
    conversation = session.get(Conversation, conversation_id)
    return conversation is not None and conversation.is_active


def get_participant(
        conversation_id: int,
        user_id: int,
        session: Session,
) -> ConversationParticipant | None:
    return session.execute(
        select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active.is_(True),
        )
    ).scalar_one_or_none()


def is_participant(conversation_id: int, user_id: int, session: Session) -> bool:
    return get_participant(conversation_id, user_id, session) is not None


def is_admin(conversation_id: int, user_id: int, session: Session) -> bool:
    participant = get_participant(conversation_id, user_id, session)
    return participant is not None and participant.role == ParticipantRole.ADMIN


def require_participant(conversation_id: int, user_id: int, session: Session) -> None:
    """
    Raises:
      ValidationError(CONVERSATION_NOT_FOUND) — unknown or archived conversation
      ForbiddenError(NOT_A_PARTICIPANT)       — caller is not in it
    """
    if not conversation_exists(conversation_id, session):
        raise ValidationError(
            f"Conversation {conversation_id} does not exist.",
            code=ErrorCode.CONVERSATION_NOT_FOUND,
            field="conversation_id",
        )
    if not is_participant(conversation_id, user_id, session):
        raise ForbiddenError(
            "You are not a participant in this conversation.",
            code=ErrorCode.NOT_A_PARTICIPANT,
        )


def participant_ids(conversation_id: int, session: Session) -> list[int]:
    """Every current participant's user id, including inactive accounts."""
    return list(
        session.execute(
            select(ConversationParticipant.user_id)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.is_active.is_(True),
            )
            .order_by(ConversationParticipant.user_id.asc())
        ).scalars().all()
    )


def conversation_ids_for_user(user_id: int, session: Session) -> list[int]:
    """Active conversations the user belongs to. The gateway joins these rooms on connect."""
    return list(
        session.execute(
            select(ConversationParticipant.conversation_id)
            .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
            .where(
                ConversationParticipant.user_id == user_id,
                Conversation.is_active.is_(True),
                ConversationParticipant.is_active.is_(True),
            )
            .order_by(ConversationParticipant.conversation_id.asc())
        ).scalars().all()
    )


def co_participant_ids(user_id: int, session: Session) -> list[int]:
    """Distinct users who share at least one active conversation with user_id, excluding them."""
    shared = conversation_ids_for_user(user_id, session)
    if not shared:
        return []
    return list(
        session.execute(
            select(ConversationParticipant.user_id)
            .where(
                ConversationParticipant.conversation_id.in_(shared),
                ConversationParticipant.user_id != user_id,
                ConversationParticipant.is_active.is_(True),
            )
            .distinct()
            .order_by(ConversationParticipant.user_id.asc())
        ).scalars().all()
    )


def active_user(user_id: int, session: Session) -> User | None:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user
