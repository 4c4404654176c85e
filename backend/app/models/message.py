"""
models/message.py — Message table definition.

Key design points:
  - `content_encrypted` is an opaque blob. Nothing in this backend decrypts,
    parses or inspects it beyond "is it non-empty".
  - `reply_to_id` is a plain self-referencing index column. Thread display
    is a lookup by id, not an object graph, so there is deliberately no
    relationship() for it.
  - `is_deleted` is a soft-delete flag; rows are never removed.
  - `created_at` is set in Python (microsecond precision) so history ordering
    on (created_at, id) is stable even on databases whose CURRENT_TIMESTAMP
    has one-second resolution.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class MessageType(str, enum.Enum):
    TEXT   = "text"
    IMAGE  = "image"
    FILE   = "file"
    SYSTEM = "system"
    VOICE  = "voice"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(db.Model):
    __tablename__ = "messages"

    __table_args__ = (
        # History pages are read in (created_at, id) order per conversation.
        Index("idx_messages_conversation_created", "conversation_id", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )

    sender_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    content_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    message_type: Mapped[MessageType] = mapped_column(
        Enum(
            MessageType,
            name="message_type_enum",
            native_enum=False,
            values_callable=_enum_values,
            length=16,
        ),
        nullable=False,
        default=MessageType.TEXT,
    )

    reply_to_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Column is named "metadata"; the attribute cannot be, because
    # declarative models reserve `metadata`.
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    is_edited: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    sender: Mapped["User"] = relationship("User")  # noqa: F821

    statuses: Mapped[list["MessageStatus"]] = relationship(  # noqa: F821
        "MessageStatus",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MessageStatus.user_id",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Message id={self.id} "
            f"conversation_id={self.conversation_id} "
            f"sender_id={self.sender_id}>"
        )
