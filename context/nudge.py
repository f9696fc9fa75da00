"""
Nudge Scheduler — per-session idle timers and the nudge reply handler.

Every non-terminal reply from the bot re-arms a timer for that session.
If the visitor stays quiet for ``delay_s`` the timer fires: the session is
parked in the ``nudge`` state with a re-engagement message. The next
visitor message is routed to ``handle_response`` which either resumes the
dialogue where it stopped or closes the session.

Rules:
  - at most one outstanding timer per session; ``arm`` cancels the old one
    before scheduling, with no await in between
  - every mutation happens under the session's lock, so a fire that is
    cancelled while waiting for the lock never touches the session
  - a timer never re-arms itself; only an affirmative nudge reply does

Timers are plain asyncio tasks living in this process; they are not
shared across workers.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from context.intents import AffirmativeClassifier, KeywordAffirmativeClassifier
from context.sessions import SessionManager, resume_state
from context.state_machine import ConversationStateMachine
from models.schemas import ConversationState, MessageRole, Session

logger = structlog.get_logger()

FireCallback = Callable[[str], Awaitable[object]]


@dataclass
class NudgeOutcome:
    """What the visitor sees after answering a nudge."""
    state: ConversationState
    message: str
    quick_replies: list[str] = field(default_factory=list)
    resumed: bool = False
    completed: bool = False
    error: str = ""


class NudgeScheduler:

    def __init__(
        self,
        sessions: SessionManager,
        machine: ConversationStateMachine,
        delay_s: float = 120.0,
        classifier: AffirmativeClassifier = None,
    ):
        self.sessions = sessions
        self.machine = machine
        self.delay_s = delay_s
        self.classifier = classifier or KeywordAffirmativeClassifier()
        self._timers: dict[str, asyncio.Task] = {}
        sessions.add_delete_listener(self.cancel)

    @classmethod
    def from_settings(cls, sessions, machine, settings, classifier=None) -> "NudgeScheduler":
        if classifier is None:
            classifier = KeywordAffirmativeClassifier(
                extra_affirmative=settings.nudge.affirmative_keywords,
                extra_negative=settings.nudge.negative_keywords,
            )
        return cls(sessions, machine, delay_s=settings.nudge.delay_s, classifier=classifier)

    # ── Timer bookkeeping ─────────────────────────────────────

    def arm(self, session_id: str, on_fire: FireCallback = None) -> None:
        """Schedule ``on_fire`` (default: ``fire``) after the idle delay."""
        self.cancel(session_id)
        callback = on_fire or self.fire
        task = asyncio.get_running_loop().create_task(
            self._run_timer(session_id, callback), name=f"nudge:{session_id}",
        )
        self._timers[session_id] = task
        logger.debug("nudge_armed", session_id=session_id, delay_s=self.delay_s)

    def cancel(self, session_id: str) -> bool:
        """Drop the session's timer. Safe to call when none is armed."""
        task = self._timers.pop(session_id, None)
        if task is None:
            return False
        # a timer cancelling itself from inside its own callback must finish
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("nudge_cancelled", session_id=session_id)
        return True

    def reset(self, session_id: str, on_fire: FireCallback = None) -> None:
        self.cancel(session_id)
        self.arm(session_id, on_fire)

    def is_armed(self, session_id: str) -> bool:
        task = self._timers.get(session_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._timers.values() if not t.done())

    async def _run_timer(self, session_id: str, callback: FireCallback) -> None:
        try:
            await asyncio.sleep(self.delay_s)
            await callback(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("nudge_callback_failed", session_id=session_id, error=str(e))
        finally:
            if self._timers.get(session_id) is asyncio.current_task():
                del self._timers[session_id]

    async def shutdown(self) -> None:
        """Cancel every outstanding timer and wait for them to unwind."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("nudge_scheduler_stopped", cancelled=len(tasks))

    # ── Firing ────────────────────────────────────────────────

    async def fire(self, session_id: str) -> bool:
        """Park an idle session in ``nudge``. Returns True if it did."""
        async with self.sessions.lock(session_id):
            session = await self.sessions.get(session_id)
            if session is None or session.is_completed:
                logger.info("nudge_skipped", session_id=session_id, reason="gone_or_completed")
                return False
            if session.current_state == ConversationState.NUDGE:
                logger.info("nudge_skipped", session_id=session_id, reason="already_nudged")
                return False

            await self.sessions.update(
                session_id,
                previous_state=session.current_state,
                current_state=ConversationState.NUDGE,
            )
            await self.sessions.append_message(
                session_id,
                MessageRole.ASSISTANT,
                self.machine.render(ConversationState.NUDGE, self._template_data(session)),
                self.machine.quick_replies(ConversationState.NUDGE),
            )
        logger.info("nudge_fired", session_id=session_id,
                    previous_state=session.current_state.value)
        return True

    # ── Replies ───────────────────────────────────────────────

    async def respond(self, session_id: str, text: str) -> Optional[NudgeOutcome]:
        """
        Standalone entry point: records the visitor's reply and handles it.
        Returns None when the session is gone or not waiting on a nudge.
        """
        async with self.sessions.lock(session_id):
            session = await self.sessions.get(session_id)
            if session is None or session.current_state != ConversationState.NUDGE:
                return None
            session = await self.sessions.append_message(session_id, MessageRole.USER, text or "")
            return await self.handle_response(session, text)

    async def handle_response(self, session: Session, text: str) -> NudgeOutcome:
        """
        Resume or close a nudged session. The caller holds the session lock
        and has already recorded the visitor's message.
        """
        nudge = ConversationState.NUDGE
        if not (text or "").strip():
            message = self.machine.render(nudge, self._template_data(session))
            quick_replies = self.machine.quick_replies(nudge)
            await self.sessions.append_message(session.id, MessageRole.ASSISTANT, message, quick_replies)
            return NudgeOutcome(
                state=nudge, message=message, quick_replies=quick_replies,
                error="Please choose one of the options.",
            )

        data = self._template_data(session)

        if self.classifier(text):
            target = session.previous_state or resume_state(session)
            # the greeting collects nothing; go straight to the first open question
            if target in (nudge, ConversationState.WELCOME):
                target = resume_state(session)

            if target == ConversationState.COMPLETE:
                # everything was already collected; finish instead of asking again
                message = self.machine.render(ConversationState.COMPLETE, data)
                await self.sessions.append_message(session.id, MessageRole.ASSISTANT, message)
                await self.sessions.complete(session.id)
                self.cancel(session.id)
                logger.info("nudge_accepted_completed", session_id=session.id)
                return NudgeOutcome(state=target, message=message, resumed=True, completed=True)

            await self.sessions.update(session.id, current_state=target, previous_state=None)
            message = self.machine.continuation_message(target, data)
            quick_replies = self.machine.quick_replies(target)
            await self.sessions.append_message(
                session.id, MessageRole.ASSISTANT, message, quick_replies,
            )
            self.arm(session.id)
            logger.info("nudge_accepted", session_id=session.id, resumed_state=target.value)
            return NudgeOutcome(
                state=target, message=message, quick_replies=quick_replies, resumed=True,
            )

        message = self.machine.closing_message(data)
        await self.sessions.append_message(session.id, MessageRole.ASSISTANT, message)
        await self.sessions.complete(session.id)
        self.cancel(session.id)
        logger.info("nudge_declined", session_id=session.id)
        return NudgeOutcome(state=ConversationState.COMPLETE, message=message, completed=True)

    @staticmethod
    def _template_data(session: Session) -> dict:
        return {**session.user_data, "first_name": session.first_name}
