"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlSessionStore
  - Returns copies, so callers can't mutate stored records by accident
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseSessionStore
from models.schemas import HistoryEntry, MessageRole, Session

logger = structlog.get_logger()

_IMMUTABLE_FIELDS = {"id", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemorySessionStore(BaseSessionStore):
    """
    Full-featured in-memory store with the same interface as SqlSessionStore.
    ``clock`` can be swapped in tests to age sessions without sleeping.
    """

    def __init__(self, clock: Callable[[], datetime] = None):
        self._sessions: dict[str, Session] = {}        # id → session
        self._clock = clock or _utcnow
        logger.info("inmemory_store_initialized")

    # ── Lifecycle ─────────────────────────────────────────

    async def create(self, user_id: str, display_name: str = "") -> Session:
        now = self._clock()
        session = Session(
            id=_new_id(),
            user_id=user_id,
            display_name=display_name,
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.id] = session
        self._touched()
        return session.model_copy(deep=True)

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def delete(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        if existed:
            self._touched()
        return existed

    # ── Mutation ──────────────────────────────────────────

    async def update(self, session_id: str, **fields: Any) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        changes = {k: v for k, v in fields.items() if k not in _IMMUTABLE_FIELDS}
        changes["updated_at"] = self._clock()
        updated = Session.model_validate({**session.model_dump(), **changes})
        self._sessions[session_id] = updated
        self._touched()
        return updated.model_copy(deep=True)

    async def append_message(
        self, session_id: str, role: str, text: str, quick_replies: list[str] = None,
    ) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self._clock()
        entry = HistoryEntry(
            role=MessageRole(role),
            text=text,
            timestamp=now,
            quick_replies=list(quick_replies or []),
        )
        updated = session.model_copy(update={
            "conversation_history": [*session.conversation_history, entry],
            "updated_at": now,
        })
        self._sessions[session_id] = updated
        self._touched()
        return updated.model_copy(deep=True)

    # ── Queries ───────────────────────────────────────────

    async def find_expired(self, cutoff: datetime) -> list[str]:
        return [
            s.id for s in self._sessions.values()
            if not s.is_completed and s.updated_at < cutoff
        ]

    async def list_by_user(self, user_id: str) -> list[Session]:
        sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        sessions.sort(key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in sessions]

    async def stats(self) -> dict[str, Any]:
        by_state: dict[str, int] = {}
        for s in self._sessions.values():
            by_state[s.current_state.value] = by_state.get(s.current_state.value, 0) + 1
        completed = sum(1 for s in self._sessions.values() if s.is_completed)
        return {
            "backend": self.backend_name,
            "total": len(self._sessions),
            "completed": completed,
            "active": len(self._sessions) - completed,
            "by_state": by_state,
        }

    # ── Hooks ─────────────────────────────────────────────

    backend_name = "memory"

    def _touched(self) -> None:
        """Called after every write. Persistent subclasses flush here."""
