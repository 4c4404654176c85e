"""
models/conversation.py — Conversation and ConversationParticipant tables.

Conversation CRUD lives outside this backend; these tables are read by
services/membership_service.py to answer "does this conversation exist?",
"is this user a participant?" and "is this participant an admin?".
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class ConversationType(str, enum.Enum):
    DIRECT = "direct"
    GROUP  = "group"


class ParticipantRole(str, enum.Enum):
    ADMIN     = "admin"
    MODERATOR = "moderator"
    MEMBER    = "member"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Conversation(db.Model):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(primary_key=True)

    type: Mapped[ConversationType] = mapped_column(
        Enum(
            ConversationType,
            name="conversation_type_enum",
            native_enum=False,
            values_callable=_enum_values,
            length=16,
        ),
        nullable=False,
        default=ConversationType.DIRECT,
    )

    title: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    participants: Mapped[list["ConversationParticipant"]] = relationship(
        "ConversationParticipant",
        back_populates="conversation",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Conversation id={self.id} type={self.type.value}>"


class ConversationParticipant(db.Model):
    __tablename__ = "conversation_participants"

    __table_args__ = (
        UniqueConstraint(
            "conversation_id",
            "user_id",
            name="uq_conversation_participants_conversation_user",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    role: Mapped[ParticipantRole] = mapped_column(
        Enum(
            ParticipantRole,
            name="participant_role_enum",
            native_enum=False,
            values_callable=_enum_values,
            length=16,
        ),
        nullable=False,
        default=ParticipantRole.MEMBER,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # A participant who left keeps the row (their message statuses still
    # point at it) but loses every membership right.
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    left_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    conversation: Mapped[Conversation] = relationship(
        "Conversation",
        back_populates="participants",
    )

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="participations",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ConversationParticipant id={self.id} "
            f"conversation_id={self.conversation_id} "
            f"user_id={self.user_id} role={self.role.value}>"
        )
