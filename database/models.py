"""
ORM mapping for the sql session store.

One row per session. user_data and the transcript live in JSON columns
(jsonb on PostgreSQL, native JSON on MySQL, TEXT on SQLite); the transcript
is append-only and always loaded with its session, so it has no table of
its own. The (is_completed, updated_at) index serves the expiry sweep.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Index, JSON, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), default="", index=True)
    display_name: Mapped[str] = mapped_column(String(256), default="")

    current_state: Mapped[str] = mapped_column(String(32), default="welcome")
    previous_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    user_data: Mapped[Any] = mapped_column(JSON, default=dict)
    conversation_history: Mapped[Any] = mapped_column(JSON, default=list)

    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_sessions_expiry", "is_completed", "updated_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "current_state": self.current_state,
            "previous_state": self.previous_state,
            "user_data": dict(self.user_data or {}),
            "conversation_history": list(self.conversation_history or []),
            "is_completed": bool(self.is_completed),
            "created_at": _aware(self.created_at),
            "updated_at": _aware(self.updated_at),
        }


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
