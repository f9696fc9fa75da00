"""
Abstract Session Store — Interface for all storage backends.

Implementations:
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON file on disk, single-process, durable)

Stores are dumb: they do not know about expiry thresholds, locks or the
completed-session guard. Those live in context/sessions.py. Every Session
a store returns is a copy; mutating it never changes the stored record.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import ConversationState, Session


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    async def create(self, user_id: str, display_name: str = "") -> Session:
        ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    # ── Mutation ──────────────────────────────────────────────

    @abstractmethod
    async def update(self, session_id: str, **fields: Any) -> Optional[Session]:
        """Overwrite the given top-level fields and refresh updated_at."""
        ...

    @abstractmethod
    async def append_message(
        self, session_id: str, role: str, text: str, quick_replies: list[str] = None,
    ) -> Optional[Session]:
        ...

    async def set_user_data(self, session_id: str, data: dict[str, Any]) -> Optional[Session]:
        return await self.update(session_id, user_data=dict(data))

    async def set_state(self, session_id: str, state: ConversationState) -> Optional[Session]:
        return await self.update(session_id, current_state=ConversationState(state))

    async def complete(self, session_id: str) -> Optional[Session]:
        return await self.update(
            session_id,
            is_completed=True,
            current_state=ConversationState.COMPLETE,
            previous_state=None,
        )

    # ── Queries ───────────────────────────────────────────────

    @abstractmethod
    async def find_expired(self, cutoff: datetime) -> list[str]:
        """Ids of incomplete sessions last touched before ``cutoff``."""
        ...

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Session]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        """Release backend resources. Default: nothing to do."""
        return None
