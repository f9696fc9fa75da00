"""
SqlSessionStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Each call opens its own transactional scope via ``get_session()``. Row ↔
model conversion goes through the pydantic Session so that enum and
datetime coercion match the in-memory backend exactly.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, select

from database.models import SessionRow
from database.session import close_db, get_session
from database.store_base import BaseSessionStore
from models.schemas import HistoryEntry, MessageRole, Session

logger = structlog.get_logger()

_IMMUTABLE_FIELDS = {"id", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    backend_name = "sql"

    def __init__(self, clock: Callable[[], datetime] = None):
        self._clock = clock or _utcnow

    # ── Lifecycle ──────────────────────────────────────────

    async def create(self, user_id: str, display_name: str = "") -> Session:
        now = self._clock()
        session = Session(user_id=user_id, display_name=display_name,
                          created_at=now, updated_at=now)
        async with get_session() as db:
            db.add(SessionRow(**self._to_columns(session)))
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        async with get_session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def delete(self, session_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(SessionRow).where(SessionRow.id == session_id))
            return (result.rowcount or 0) > 0

    # ── Mutation ───────────────────────────────────────────

    async def update(self, session_id: str, **fields: Any) -> Optional[Session]:
        async with get_session() as db:
            row = await db.get(SessionRow, session_id)
            if row is None:
                return None
            current = self._row_to_session(row)
            changes = {k: v for k, v in fields.items() if k not in _IMMUTABLE_FIELDS}
            changes["updated_at"] = self._clock()
            updated = Session.model_validate({**current.model_dump(), **changes})
            for column, value in self._to_columns(updated).items():
                setattr(row, column, value)
            return updated

    async def append_message(
        self, session_id: str, role: str, text: str, quick_replies: list[str] = None,
    ) -> Optional[Session]:
        async with get_session() as db:
            row = await db.get(SessionRow, session_id)
            if row is None:
                return None
            now = self._clock()
            entry = HistoryEntry(role=MessageRole(role), text=text, timestamp=now,
                                 quick_replies=list(quick_replies or []))
            # reassign so SQLAlchemy sees the JSON column change
            row.conversation_history = [
                *(row.conversation_history or []), entry.model_dump(mode="json"),
            ]
            row.updated_at = now
            return self._row_to_session(row)

    # ── Queries ────────────────────────────────────────────

    async def find_expired(self, cutoff: datetime) -> list[str]:
        async with get_session() as db:
            stmt = select(SessionRow.id).where(
                SessionRow.is_completed.is_(False),
                SessionRow.updated_at < cutoff,
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_by_user(self, user_id: str) -> list[Session]:
        async with get_session() as db:
            stmt = (
                select(SessionRow)
                .where(SessionRow.user_id == user_id)
                .order_by(SessionRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    async def stats(self) -> dict[str, Any]:
        async with get_session() as db:
            result = await db.execute(
                select(SessionRow.current_state, SessionRow.is_completed, func.count())
                .group_by(SessionRow.current_state, SessionRow.is_completed)
            )
            by_state: dict[str, int] = {}
            completed = total = 0
            for state, is_completed, count in result.all():
                by_state[state] = by_state.get(state, 0) + count
                total += count
                if is_completed:
                    completed += count
        return {
            "backend": self.backend_name,
            "total": total,
            "completed": completed,
            "active": total - completed,
            "by_state": by_state,
        }

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session.model_validate(row.to_dict())

    @staticmethod
    def _to_columns(session: Session) -> dict[str, Any]:
        data = session.model_dump(mode="json")
        return {
            "id": session.id,
            "user_id": session.user_id,
            "display_name": session.display_name,
            "current_state": session.current_state.value,
            "previous_state": session.previous_state.value if session.previous_state else None,
            "user_data": data["user_data"],
            "conversation_history": data["conversation_history"],
            "is_completed": session.is_completed,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }

    async def close(self) -> None:
        await close_db()
