"""
Orchestrator — The central coordinator for the admissions chat.

Inbound message flow:
  (session_id, text)
    → lock session → append visitor message
    → nudge reply?  NudgeScheduler.handle_response
      otherwise     ConversationStateMachine.process → persist state + data
    → terminal?     append closing text, complete, drop timer
      otherwise     reset nudge timer
    → unlock
    → (AI states only) ReplyEngine.phrase outside the lock
    → lock → append assistant reply → unlock
    → completed?    notify the lead sink, outside the lock

The session lock is never held across the LLM call or the lead sink. A
separate per-session turn lock wraps the whole flow, so a second message
from the same visitor waits for the first reply to land in the transcript
while timers and the reaper still only contend for the short sections.
"""
from __future__ import annotations

import asyncio
import structlog
import uuid
import weakref
from typing import Any, Optional, Protocol

from context.nudge import NudgeOutcome, NudgeScheduler
from context.sessions import SessionManager
from context.state_machine import ConversationStateMachine, TransitionResult
from context import content
from core.engine import ReplyEngine
from models.schemas import ChatReply, ConversationState, MessageRole, Session

logger = structlog.get_logger()

S = ConversationState


class LeadSink(Protocol):
    async def on_session_complete(self, session: Session) -> Any:
        ...


class ChatOrchestrator:
    """
    Wires the state machine, session manager, nudge scheduler, reply engine
    and lead sink into one request/response surface.
    """

    def __init__(
        self,
        sessions: SessionManager,
        machine: ConversationStateMachine,
        nudges: NudgeScheduler,
        engine: Optional[ReplyEngine] = None,
        lead_sink: Optional[LeadSink] = None,
        ai_states: list[str] = None,
    ):
        self.sessions = sessions
        self.machine = machine
        self.nudges = nudges
        self.engine = engine
        self.lead_sink = lead_sink
        self.ai_states = {S(s) for s in (ai_states or [])}
        self._turns: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self.sessions.start_reaper()
        logger.info("orchestrator_started", ai_states=sorted(s.value for s in self.ai_states))

    async def shutdown(self) -> None:
        """Timers first, then the reaper, then the store."""
        await self.nudges.shutdown()
        await self.sessions.stop_reaper()
        await self.sessions.store.close()
        logger.info("orchestrator_stopped")

    # ── Sessions ──────────────────────────────────────────────

    async def start_session(self, user_id: str = None, display_name: str = "") -> ChatReply:
        user_id = user_id or f"user_{uuid.uuid4().hex[:12]}"
        session = await self.sessions.create(user_id, display_name.strip())
        message = self.machine.render(S.WELCOME, self._template_data(session, session.user_data))
        quick_replies = self.machine.quick_replies(S.WELCOME)
        async with self.sessions.lock(session.id):
            await self.sessions.append_message(session.id, MessageRole.ASSISTANT, message, quick_replies)
            self.nudges.arm(session.id)
        return ChatReply(
            session_id=session.id, state=S.WELCOME,
            message=message, quick_replies=quick_replies,
        )

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.sessions.get(session_id)

    async def end_session(self, session_id: str) -> bool:
        async with self.sessions.lock(session_id):
            self.nudges.cancel(session_id)
            return await self.sessions.delete(session_id)

    # ── Messages ──────────────────────────────────────────────

    def _turn_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._turns.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._turns[session_id] = lock
        return lock

    async def handle_message(self, session_id: str, text: str) -> Optional[ChatReply]:
        """
        Process one visitor message. Returns None when the session does not
        exist (or has expired); never creates one implicitly.
        """
        async with self._turn_lock(session_id):
            return await self._handle_turn(session_id, text)

    async def _handle_turn(self, session_id: str, text: str) -> Optional[ChatReply]:
        text = text if isinstance(text, str) else ""
        phrase_job: Optional[tuple[S, Session, str]] = None
        completed: Optional[Session] = None

        async with self.sessions.lock(session_id):
            session = await self.sessions.get(session_id)
            if session is None:
                logger.info("message_for_unknown_session", session_id=session_id)
                return None

            if session.is_completed:
                return ChatReply(
                    session_id=session_id, state=S.COMPLETE,
                    message=self.machine.render(S.COMPLETE, self._template_data(session, session.user_data)),
                    success=False, error="Conversation already completed",
                    error_kind="SESSION_COMPLETED", completed=True,
                )

            session = await self.sessions.append_message(session_id, MessageRole.USER, text)

            if session.current_state == S.NUDGE:
                outcome = await self.nudges.handle_response(session, text)
                reply = self._nudge_reply(session_id, outcome)
                if outcome.completed:
                    completed = await self.sessions.store.get(session_id)
            else:
                result = self.machine.process(session.current_state, text, session.user_data)
                reply, phrase_job, completed = await self._apply_transition(session, text, result)

        if phrase_job is not None:
            state, snapshot, default_text = phrase_job
            generated = await self.engine.phrase(state, snapshot, text, default_text)
            reply.message = generated.text
            reply.fallback = generated.fallback
            async with self.sessions.lock(session_id):
                await self.sessions.append_message(
                    session_id, MessageRole.ASSISTANT, reply.message, reply.quick_replies,
                )

        if completed is not None:
            await self._notify_complete(completed)

        return reply

    async def _apply_transition(
        self, session: Session, text: str, result: TransitionResult,
    ) -> tuple[ChatReply, Optional[tuple], Optional[Session]]:
        """Persist one state machine result. Caller holds the session lock."""
        sid = session.id
        data = result.user_data

        if result.escalated or result.error_kind == "INVALID_STATE":
            await self.sessions.update(sid, current_state=S.WELCOME, previous_state=None, user_data=data)
            quick_replies = self.machine.quick_replies(S.WELCOME)
            await self.sessions.append_message(sid, MessageRole.ASSISTANT, result.message, quick_replies)
            self.nudges.reset(sid)
            logger.info("conversation_restarted", session_id=sid,
                        reason="escalated" if result.escalated else "invalid_state")
            return ChatReply(
                session_id=sid, state=S.WELCOME, message=result.message,
                quick_replies=quick_replies, success=False, error=result.error,
                error_kind=result.error_kind, escalated=result.escalated,
            ), None, None

        if not result.success:
            await self.sessions.set_user_data(sid, data)
            quick_replies = self.machine.quick_replies(session.current_state)
            await self.sessions.append_message(sid, MessageRole.ASSISTANT, result.message, quick_replies)
            self.nudges.reset(sid)
            logger.info("input_rejected", session_id=sid, state=session.current_state.value,
                        error_kind=result.error_kind, retry_count=data.get("retry_count"))
            return ChatReply(
                session_id=sid, state=session.current_state, message=result.message,
                quick_replies=quick_replies, success=False, error=result.error,
                error_kind=result.error_kind,
            ), None, None

        next_state = result.next_state
        terminal = self.machine.is_terminal(next_state)
        # complete() sets the terminal state together with is_completed
        fields = {"user_data": data} if terminal else {"current_state": next_state, "user_data": data}
        updated = await self.sessions.update(sid, **fields)
        template_data = self._template_data(session, data)
        message = self.machine.render(next_state, template_data)
        if next_state == S.PHONE:
            message = f"{content.major_info(data.get('major', ''))}\n\n{message}"
        quick_replies = self.machine.quick_replies(next_state)
        reply = ChatReply(session_id=sid, state=next_state, message=message, quick_replies=quick_replies)
        logger.info("state_advanced", session_id=sid, transition=f"{result.from_state.value} → {next_state.value}")

        if terminal:
            await self.sessions.append_message(sid, MessageRole.ASSISTANT, message)
            completed = await self.sessions.complete(sid)
            self.nudges.cancel(sid)
            reply.completed = True
            return reply, None, completed

        self.nudges.reset(sid)
        if self.engine is not None and next_state in self.ai_states:
            return reply, (next_state, updated, message), None

        await self.sessions.append_message(sid, MessageRole.ASSISTANT, message, quick_replies)
        return reply, None, None

    def _nudge_reply(self, session_id: str, outcome: NudgeOutcome) -> ChatReply:
        return ChatReply(
            session_id=session_id,
            state=outcome.state,
            message=outcome.message,
            quick_replies=outcome.quick_replies,
            success=not outcome.error,
            error=outcome.error,
            completed=outcome.completed,
        )

    async def _notify_complete(self, session: Session) -> None:
        if self.lead_sink is None:
            return
        try:
            await self.lead_sink.on_session_complete(session)
        except Exception as e:
            logger.error("lead_sink_failed", session_id=session.id, error=str(e))

    @staticmethod
    def _template_data(session: Session, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "first_name": session.first_name}
