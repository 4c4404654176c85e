"""
models/auth_session.py — AuthSession table definition.

One row per issued refresh token (one login / one rotation on one device).

Columns:
  refresh_token_hash — SHA-256 hex digest of the raw refresh JWT. The raw
                       value is returned to the client once and never stored.
  revoked_at         — NULL while active. Set on logout and on rotation.

A session is valid iff revoked_at IS NULL and expires_at is in the future.
The lifecycle is one-way: active → revoked. Nothing un-revokes a session.

The stored hash is immutable: an UPDATE that changes refresh_token_hash is
rejected by the before_update listener at the bottom of this module.
"""

from __future__ import annotations

import hmac
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String, Text, event, func, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthSession(db.Model):
    __tablename__ = "auth_sessions"

    # UUID string, embedded in the refresh JWT as the `sid` claim.
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    # ON DELETE CASCADE: sessions are owned by the user.
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    refresh_token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    device_info: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="unknown",
    )

    # 45 chars fits a textual IPv6 address.
    ip_address: Mapped[str] = mapped_column(
        String(45),
        nullable=False,
        default="0.0.0.0",
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="sessions",
    )

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.revoked_at is None and as_utc(self.expires_at) > now

    def matches_refresh_digest(self, digest: str) -> bool:
        """Constant-time comparison against the stored digest."""
        return hmac.compare_digest(self.refresh_token_hash, digest)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<AuthSession id={self.id} "
            f"user_id={self.user_id} "
            f"revoked={self.revoked_at is not None}>"
        )


@event.listens_for(AuthSession, "before_update")
def _reject_hash_change(mapper, connection, target: AuthSession) -> None:
    history = inspect(target).attrs.refresh_token_hash.history
    if history.deleted and history.added and history.deleted[0] != history.added[0]:
        raise ValueError("AuthSession.refresh_token_hash is immutable once created.")
