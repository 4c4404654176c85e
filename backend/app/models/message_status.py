"""
models/message_status.py — Per-recipient delivery status.

Exactly one row per (message_id, user_id), enforced by a UNIQUE constraint.

Delivery progression is the ordered set

    pending / sent (0)  <  delivered (1)  <  read (2)

and `status_rank` stores that ordinal so message_service can advance a row
with a single conditional UPDATE (… WHERE status_rank < :target). A row
never moves backwards.

`delivered_at` and `read_at` are written once, the first time their
threshold is crossed. Recording `read` with no prior `delivered_at`
backfills `delivered_at` to the same instant.

Reactions are orthogonal to progression: `reaction` (the emoji) and
`reacted_at` never touch `status`, `delivered_at` or `read_at`.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class DeliveryStatus(str, enum.Enum):
    PENDING   = "pending"
    SENT      = "sent"
    DELIVERED = "delivered"
    READ      = "read"

    @property
    def rank(self) -> int:
        return STATUS_RANK[self]


STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.PENDING:   0,
    DeliveryStatus.SENT:      0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.READ:      2,
}


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStatus(db.Model):
    __tablename__ = "message_statuses"

    __table_args__ = (
        UniqueConstraint(
            "message_id",
            "user_id",
            name="uq_message_statuses_message_user",
        ),
        CheckConstraint(
            "status_rank BETWEEN 0 AND 2",
            name="ck_message_statuses_rank",
        ),
        # Unread counts: WHERE user_id = ? AND status_rank < 2
        Index("idx_message_statuses_user_rank", "user_id", "status_rank"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            name="delivery_status_enum",
            native_enum=False,
            values_callable=_enum_values,
            length=16,
        ),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )

    status_rank: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
    )

    # Emoji payload; NULL means "has not reacted".
    reaction: Mapped[str | None] = mapped_column(String(16), nullable=True)

    reacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    message: Mapped["Message"] = relationship(  # noqa: F821
        "Message",
        back_populates="statuses",
    )

    @property
    def reacted(self) -> bool:
        return self.reaction is not None

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<MessageStatus message_id={self.message_id} "
            f"user_id={self.user_id} status={self.status.value}>"
        )
