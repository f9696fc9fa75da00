"""
Reply Engine — LLM phrasing for the open-ended dialogue steps.

For a few states (welcome, major, major_other, custom_time) the scripted
prompt is handed to an LLM to be rephrased around the visitor's last
message. The engine never decides anything about the dialogue: it takes
the template text as the answer of last resort and returns it whenever
the model is unavailable, slow, rate-limited or produces nonsense.

Failure handling:
  - every attempt is bounded by ``timeout_s``
  - transient failures (timeout, rate limit, network) are retried with
    exponential backoff, at most ``max_retries`` extra attempts
  - a rate-limit response opens a process-wide cooldown window; calls made
    inside it go straight to the fallback
  - anything else fails fast
"""
from __future__ import annotations

import asyncio
import json
import time
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from config.settings import LLMConfig, get_settings
from context import content
from models.schemas import ConversationState, Session

logger = structlog.get_logger()

GenerateFn = Callable[[dict[str, Any]], Awaitable[str]]

TRANSIENT_KINDS = frozenset({"TIMEOUT", "RATE_LIMIT", "NETWORK"})

HISTORY_WINDOW = 6    # last three exchanges

STATE_GUIDANCE = {
    ConversationState.WELCOME: "Greet the visitor warmly and ask which major they are interested in.",
    ConversationState.MAJOR: "Acknowledge the visitor's reply and ask which major they are interested in.",
    ConversationState.MAJOR_OTHER: "Ask the visitor to type the name of the major they want.",
    ConversationState.CUSTOM_TIME: "Ask the visitor to describe a time that suits them for a call.",
}


class LLMError(Exception):
    """A failed model call, tagged with its failure kind."""

    def __init__(self, kind: str, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message or kind)
        self.kind = kind
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS


# ── Process-wide rate-limit cooldown ──────────────────────────

_cooldown_until: float = 0.0


def cooldown_remaining() -> float:
    return max(0.0, _cooldown_until - time.monotonic())


def start_cooldown(seconds: float) -> None:
    global _cooldown_until
    _cooldown_until = max(_cooldown_until, time.monotonic() + seconds)
    logger.warning("llm_cooldown_started", seconds=round(seconds, 1))


def clear_cooldown() -> None:
    global _cooldown_until
    _cooldown_until = 0.0


def _retry_after_hint(exc: BaseException) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        return float(headers.get("retry-after"))
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> LLMError:
    """Map SDK / transport exceptions onto failure kinds."""
    if isinstance(exc, LLMError):
        return exc
    name = type(exc).__name__
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)) or "Timeout" in name:
        return LLMError("TIMEOUT", str(exc))
    if getattr(exc, "status_code", None) == 429 or "RateLimit" in name:
        return LLMError("RATE_LIMIT", str(exc), retry_after=_retry_after_hint(exc))
    if isinstance(exc, (httpx.TransportError, ConnectionError)) or "APIConnection" in name:
        return LLMError("NETWORK", str(exc))
    return LLMError("API_ERROR", f"{name}: {exc}")


@dataclass
class EngineReply:
    text: str
    fallback: bool = False
    error_kind: Optional[str] = None


class ReplyEngine:
    """
    Generates phrasing using Claude or OpenAI, or any injected coroutine
    ``generate(prompt_context) -> str``.
    """

    def __init__(self, config: LLMConfig = None, generate: GenerateFn = None):
        self.config = config or get_settings().llm
        self._generate_fn = generate
        self._client = None
        self._provider = self.config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def enabled(self) -> bool:
        return self._generate_fn is not None or self._provider in ("anthropic", "openai")

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, prompt_context: dict[str, Any]) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            raise LLMError("DISABLED", "LLM client unavailable")

        system = self._build_system_prompt(prompt_context)
        messages = self._build_messages(prompt_context)

        if self.is_openai:
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text if response.content else ""

    # ── Calling with timeout / retry / cooldown ───────────────

    async def _attempt(self, prompt_context: dict[str, Any]) -> str:
        call = self._generate_fn or self._call_llm
        try:
            text = await asyncio.wait_for(call(prompt_context), timeout=self.config.timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = classify_error(e)
            if err.kind == "RATE_LIMIT":
                start_cooldown(max(self.config.cooldown_s, err.retry_after or 0.0))
            logger.warning("llm_attempt_failed", kind=err.kind, error=str(e)[:200])
            if err is e:
                raise
            raise err from e

        text = (text or "").strip()
        if len(text) < self.config.min_reply_chars:
            raise LLMError("INVALID_RESPONSE", f"reply too short ({len(text)} chars)")
        return text

    async def generate(self, prompt_context: dict[str, Any]) -> str:
        """One phrasing call with retries. Raises LLMError on failure."""
        if not self.enabled:
            raise LLMError("DISABLED", "no LLM provider configured")
        if cooldown_remaining() > 0:
            raise LLMError("COOLDOWN", f"{cooldown_remaining():.0f}s of cooldown left")

        retrying = AsyncRetrying(
            retry=retry_if_exception(lambda e: isinstance(e, LLMError) and e.transient),
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.backoff_base_s, max=5),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(prompt_context)
        raise LLMError("API_ERROR", "retry loop exited without a result")

    async def phrase(
        self,
        state: ConversationState,
        session: Session,
        user_message: str,
        default_text: str,
    ) -> EngineReply:
        """
        Rephrase ``default_text`` for ``state``. Never raises: on any failure
        the template text comes back with ``fallback=True``.
        """
        ctx = self.build_prompt_context(state, session, user_message, default_text)
        try:
            text = await self.generate(ctx)
        except LLMError as e:
            logger.info("llm_fallback_used", state=state.value, kind=e.kind,
                        session_id=session.id)
            return EngineReply(text=default_text, fallback=True, error_kind=e.kind)
        return EngineReply(text=text)

    # ── Prompt construction ───────────────────────────────────

    @staticmethod
    def build_prompt_context(
        state: ConversationState,
        session: Session,
        user_message: str,
        default_text: str,
    ) -> dict[str, Any]:
        user_data = {k: v for k, v in session.user_data.items() if k != "retry_count"}
        return {
            "state": state.value,
            "first_name": session.first_name,
            "user_data": user_data,
            "history": [
                {"role": h.role.value, "text": h.text}
                for h in session.last_messages(HISTORY_WINDOW)
            ],
            "user_message": user_message,
            "major_info": content.major_info(user_data.get("major", "")),
            "guidance": STATE_GUIDANCE.get(state, ""),
            "default_text": default_text,
        }

    def _build_system_prompt(self, ctx: dict[str, Any]) -> str:
        return _SYSTEM_PROMPT.replace(
            "{{university}}", content.UNIVERSITY
        ).replace(
            "{{state}}", ctx["state"]
        ).replace(
            "{{guidance}}", ctx["guidance"]
        ).replace(
            "{{major_info}}", ctx["major_info"]
        ).replace(
            "{{user_data}}", json.dumps(ctx["user_data"], ensure_ascii=False)
        ).replace(
            "{{default_text}}", ctx["default_text"]
        )

    @staticmethod
    def _build_messages(ctx: dict[str, Any]) -> list[dict[str, str]]:
        """Build the message history for the LLM."""
        messages = [{"role": h["role"], "content": h["text"]} for h in ctx["history"]]
        if ctx.get("user_message") and (
            not messages or messages[-1]["content"] != ctx["user_message"]
        ):
            messages.append({"role": "user", "content": ctx["user_message"]})

        # Ensure messages start with user
        if not messages:
            messages = [{"role": "user", "content": "[Visitor opened the chat]"}]
        elif messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Conversation started]"})
        return messages


_SYSTEM_PROMPT = """You are the admissions assistant for {{university}}.
You are chatting with a prospective student on the website.

Current step: {{state}}
Goal of this step: {{guidance}}

Programme notes:
{{major_info}}

Collected so far: {{user_data}}

GUIDELINES:
- Reply in 1-3 short sentences, friendly and concrete
- Never invent tuition figures, dates or scholarship amounts
- Do not ask for anything other than what this step needs
- End with the question from the scripted reply below

Scripted reply:
{{default_text}}"""
