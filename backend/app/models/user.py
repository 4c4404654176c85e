"""
models/user.py — User table definition.

No business logic. No imports from services or routes.

Username and email are stored lower-cased and trimmed (auth_service
normalises before every read and write), so the UNIQUE constraints below are
effectively case-insensitive.

Users are never physically deleted by this backend; `is_active = false` is
the only way to switch an account off.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class PresenceStatus(str, enum.Enum):
    ONLINE  = "online"
    OFFLINE = "offline"
    AWAY    = "away"
    BUSY    = "busy"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Store enum values ('online'), not names ('ONLINE')."""
    return [member.value for member in enum_cls]


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(username)) > 0",
            name="ck_users_username_nonempty",
        ),
        CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    username: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    totp_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    # Fernet token of the base32 seed. Never the seed itself.
    totp_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    status: Mapped[PresenceStatus] = mapped_column(
        Enum(
            PresenceStatus,
            name="presence_status_enum",
            native_enum=False,
            values_callable=_enum_values,
            length=16,
        ),
        nullable=False,
        default=PresenceStatus.OFFLINE,
    )

    last_seen_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    sessions: Mapped[list["AuthSession"]] = relationship(  # noqa: F821
        "AuthSession",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    participations: Mapped[list["ConversationParticipant"]] = relationship(  # noqa: F821
        "ConversationParticipant",
        back_populates="user",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} username={self.username!r}>"
