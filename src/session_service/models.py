"""Database models for session documents."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin providing created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class SessionRecord(Base, TimestampMixin):
    """One shared inventory document, keyed by the normalized session id.

    ``payload`` holds the serialized inventory map (exposed as ``json``) and
    ``updated`` the client supplied ISO-8601 write time. Both may be empty when
    a client created the document with a partial merge write. ``revision``
    increases on every write and backs the snapshot ETag.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    admin_pin: Mapped[str | None] = mapped_column(String(128))
    payload: Mapped[str | None] = mapped_column(Text)
    updated: Mapped[str | None] = mapped_column(String(64))
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


__all__ = ["SessionRecord"]
