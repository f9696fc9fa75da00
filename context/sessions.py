"""
Session Manager — lifecycle rules on top of a session store.

The store persists records; this layer adds what the conversation needs:

  - per-session asyncio locks, so a visitor message, a nudge firing and a
    reaper sweep never interleave on one session
  - expiry: an incomplete session untouched for ``expiry`` is invisible to
    ``get`` and is removed by the background reaper
  - the completed-session guard: once ``is_completed`` is set, every
    mutation is refused
  - delete listeners, used by the nudge scheduler to drop timers for
    sessions that no longer exist

Callers hold ``lock(session_id)`` around every read-modify-write of a
session. The manager's own methods do not take the lock, so they can be
composed inside one critical section.
"""
from __future__ import annotations

import asyncio
import structlog
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseSessionStore
from models.schemas import ConversationState, MessageRole, Session

logger = structlog.get_logger()

# Fields a nudge resumption checks, in dialogue order
RESUME_ORDER: tuple[tuple[str, ConversationState], ...] = (
    ("major", ConversationState.MAJOR),
    ("phone", ConversationState.PHONE),
    ("channel", ConversationState.CHANNEL),
    ("timeslot", ConversationState.TIMESLOT),
)


def resume_state(session: Session) -> ConversationState:
    """Earliest state whose field is still missing, or complete."""
    data = session.user_data or {}
    for field_name, state in RESUME_ORDER:
        if not data.get(field_name):
            return state
    return ConversationState.COMPLETE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:

    def __init__(
        self,
        store: BaseSessionStore,
        expiry: timedelta = timedelta(hours=24),
        reaper_interval_s: float = 3600.0,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.expiry = expiry
        self.reaper_interval_s = reaper_interval_s
        self._clock = clock or _utcnow
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._delete_listeners: list[Callable[[str], Any]] = []
        self._reaper_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, store: BaseSessionStore, settings, clock=None) -> "SessionManager":
        return cls(
            store,
            expiry=timedelta(hours=settings.sessions.expiry_hours),
            reaper_interval_s=settings.sessions.reaper_interval_s,
            clock=clock,
        )

    # ── Locks & listeners ─────────────────────────────────────

    def lock(self, session_id: str) -> asyncio.Lock:
        """The exclusive lock for one session, created on first use."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def add_delete_listener(self, listener: Callable[[str], Any]) -> None:
        self._delete_listeners.append(listener)

    def _notify_deleted(self, session_id: str) -> None:
        for listener in self._delete_listeners:
            try:
                listener(session_id)
            except Exception as e:
                logger.error("delete_listener_failed", session_id=session_id, error=str(e))

    # ── Reads ─────────────────────────────────────────────────

    def is_expired(self, session: Session) -> bool:
        if session.is_completed:
            return False
        return self._clock() - session.updated_at > self.expiry

    async def get(self, session_id: str) -> Optional[Session]:
        session = await self.store.get(session_id)
        if session is None:
            return None
        if self.is_expired(session):
            logger.info("session_expired_on_read", session_id=session_id)
            await self.delete(session_id)
            return None
        return session

    async def list_by_user(self, user_id: str) -> list[Session]:
        return [s for s in await self.store.list_by_user(user_id) if not self.is_expired(s)]

    async def stats(self) -> dict[str, Any]:
        return await self.store.stats()

    # ── Writes ────────────────────────────────────────────────

    async def create(self, user_id: str, display_name: str = "") -> Session:
        session = await self.store.create(user_id, display_name)
        logger.info("session_created", session_id=session.id, user_id=user_id)
        return session

    async def _mutable(self, session_id: str) -> bool:
        current = await self.store.get(session_id)
        if current is None:
            return False
        if current.is_completed:
            logger.warning("session_already_completed", session_id=session_id)
            return False
        return True

    async def update(self, session_id: str, **fields: Any) -> Optional[Session]:
        if not await self._mutable(session_id):
            return None
        return await self.store.update(session_id, **fields)

    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        text: str,
        quick_replies: list[str] = None,
    ) -> Optional[Session]:
        if not await self._mutable(session_id):
            return None
        return await self.store.append_message(
            session_id, MessageRole(role).value, text, quick_replies,
        )

    async def set_user_data(self, session_id: str, data: dict[str, Any]) -> Optional[Session]:
        if not await self._mutable(session_id):
            return None
        return await self.store.set_user_data(session_id, data)

    async def set_state(self, session_id: str, state: ConversationState) -> Optional[Session]:
        if not await self._mutable(session_id):
            return None
        return await self.store.set_state(session_id, state)

    async def complete(self, session_id: str) -> Optional[Session]:
        if not await self._mutable(session_id):
            return None
        session = await self.store.complete(session_id)
        logger.info("session_completed", session_id=session_id)
        return session

    async def delete(self, session_id: str) -> bool:
        deleted = await self.store.delete(session_id)
        if deleted:
            logger.info("session_deleted", session_id=session_id)
        self._notify_deleted(session_id)
        return deleted

    # ── Reaper ────────────────────────────────────────────────

    async def reap(self) -> int:
        """Delete every expired incomplete session. Returns the count."""
        cutoff = self._clock() - self.expiry
        candidates = await self.store.find_expired(cutoff)
        removed = 0
        for session_id in candidates:
            async with self.lock(session_id):
                # re-check: a message may have landed since the scan
                session = await self.store.get(session_id)
                if session is None or not self.is_expired(session):
                    continue
                if await self.store.delete(session_id):
                    removed += 1
                self._notify_deleted(session_id)
        if removed:
            logger.info("sessions_reaped", count=removed)
        return removed

    async def start_reaper(self) -> None:
        """Start the periodic sweep as a background task."""
        if self._reaper_task and not self._reaper_task.done():
            return
        self._reaper_task = asyncio.create_task(self._reap_loop(), name="session_reaper")
        logger.info("session_reaper_started", interval_s=self.reaper_interval_s)

    async def stop_reaper(self) -> None:
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None
        logger.info("session_reaper_stopped")

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reaper_interval_s)
            try:
                await self.reap()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("session_reap_error", error=str(e))
