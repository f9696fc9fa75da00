"""
Conversation State Machine — the fixed admissions dialogue.

Each state is one row in a transition table: a prompt template, its quick
replies, an optional validator and a next-state rule. ``process`` is pure:
it takes the current state, the visitor's text and the collected data, and
returns a TransitionResult carrying a *new* data dict. Persistence, timers
and locking belong to the callers (SessionManager, NudgeScheduler,
ChatOrchestrator).

Flow:
  welcome → major → (major_other) → phone → channel → timeslot → (custom_time) → complete
  nudge is entered only by the nudge scheduler.

Usage:
    sm = ConversationStateMachine()
    result = sm.process("phone", "0901 234 567", {"major": "Design"})
    # result.next_state == ConversationState.CHANNEL
    # result.user_data["phone_standardized"] == "0901234567"
    sm.render(result.next_state, result.user_data)
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from context import content
from models.schemas import ConversationState
from utils import phone as phone_validator

logger = structlog.get_logger()

S = ConversationState

RETRY_KEY = "retry_count"
PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


# ──────────────────────────────────────────────────────────────
#  Table types
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationOutcome:
    is_valid: bool
    error: str = ""
    error_kind: Optional[str] = None
    extracted_fields: dict[str, Any] = field(default_factory=dict)


Validator = Callable[[str, dict], ValidationOutcome]
NextStateRule = Callable[[str, dict], ConversationState]


@dataclass(frozen=True)
class StateSpec:
    prompt_template: str
    quick_replies: tuple[str, ...] = ()
    validator: Optional[Validator] = None
    next_state: Optional[NextStateRule] = None
    error_message: str = ""
    generic_template: Optional[str] = None     # used when a placeholder can't be filled
    resume_template: Optional[str] = None      # continuation text after a nudge
    requires_input: bool = True


# ──────────────────────────────────────────────────────────────
#  Validators
# ──────────────────────────────────────────────────────────────

def _accept_any(text: str, data: dict) -> ValidationOutcome:
    return ValidationOutcome(is_valid=True)


def validate_major(text: str, data: dict) -> ValidationOutcome:
    major = text.strip()
    if not major:
        return ValidationOutcome(False, content.MAJOR_ERROR, "EMPTY")
    return ValidationOutcome(True, extracted_fields={"major": major})


def validate_custom_major(text: str, data: dict) -> ValidationOutcome:
    major = text.strip()
    if not 2 <= len(major) <= 100:
        return ValidationOutcome(False, content.MAJOR_OTHER_ERROR, "BAD_LENGTH")
    return ValidationOutcome(True, extracted_fields={"major": major})


def validate_phone(text: str, data: dict) -> ValidationOutcome:
    result = phone_validator.validate(text)
    if not result.is_valid:
        return ValidationOutcome(False, result.error, result.error_kind.value)
    return ValidationOutcome(True, extracted_fields={
        "phone": text.strip(),
        "phone_clean": result.cleaned_input,
        "phone_standardized": result.standardized_form,
        "phone_network": result.network_class,
    })


def _menu_validator(options: tuple[str, ...], field_name: str, error: str) -> Validator:
    """Case-insensitive menu match; the canonical label is stored."""
    lookup = {o.lower(): o for o in options}

    def validate(text: str, data: dict) -> ValidationOutcome:
        choice = lookup.get(text.strip().lower())
        if choice is None:
            return ValidationOutcome(False, error, "NOT_AN_OPTION")
        return ValidationOutcome(True, extracted_fields={field_name: choice})

    return validate


def validate_custom_time(text: str, data: dict) -> ValidationOutcome:
    slot = text.strip()
    if not 3 <= len(slot) <= 100:
        return ValidationOutcome(False, content.CUSTOM_TIME_ERROR, "BAD_LENGTH")
    return ValidationOutcome(True, extracted_fields={"timeslot": slot})


# ──────────────────────────────────────────────────────────────
#  Next-state rules
# ──────────────────────────────────────────────────────────────

def _always(target: ConversationState) -> NextStateRule:
    return lambda text, data: target


def _after_major(text: str, data: dict) -> ConversationState:
    if text.strip().lower() == content.MAJOR_OTHER_SENTINEL.lower():
        return S.MAJOR_OTHER
    return S.PHONE


def _after_timeslot(text: str, data: dict) -> ConversationState:
    if text.strip().lower() == content.CUSTOM_TIME_SENTINEL.lower():
        return S.CUSTOM_TIME
    return S.COMPLETE


# Possible targets per rule, used for table validation
RULE_TARGETS: dict[ConversationState, tuple[ConversationState, ...]] = {
    S.WELCOME: (S.MAJOR,),
    S.MAJOR: (S.PHONE, S.MAJOR_OTHER),
    S.MAJOR_OTHER: (S.PHONE,),
    S.PHONE: (S.CHANNEL,),
    S.CHANNEL: (S.TIMESLOT,),
    S.TIMESLOT: (S.COMPLETE, S.CUSTOM_TIME),
    S.CUSTOM_TIME: (S.COMPLETE,),
}


def build_default_table() -> dict[ConversationState, StateSpec]:
    return {
        S.WELCOME: StateSpec(
            prompt_template=content.WELCOME,
            generic_template=content.WELCOME_GENERIC,
            quick_replies=content.WELCOME_REPLIES,
            validator=_accept_any,
            next_state=_always(S.MAJOR),
        ),
        S.MAJOR: StateSpec(
            prompt_template=content.MAJOR,
            quick_replies=content.MAJOR_OPTIONS,
            validator=validate_major,
            next_state=_after_major,
            error_message=content.MAJOR_ERROR,
            resume_template=content.RESUME["major"],
        ),
        S.MAJOR_OTHER: StateSpec(
            prompt_template=content.MAJOR_OTHER,
            validator=validate_custom_major,
            next_state=_always(S.PHONE),
            error_message=content.MAJOR_OTHER_ERROR,
            resume_template=content.RESUME["major_other"],
        ),
        S.PHONE: StateSpec(
            prompt_template=content.PHONE,
            validator=validate_phone,
            next_state=_always(S.CHANNEL),
            error_message=content.PHONE_ERROR,
            resume_template=content.RESUME["phone"],
        ),
        S.CHANNEL: StateSpec(
            prompt_template=content.CHANNEL,
            quick_replies=content.CHANNEL_OPTIONS,
            validator=_menu_validator(content.CHANNEL_OPTIONS, "channel", content.CHANNEL_ERROR),
            next_state=_always(S.TIMESLOT),
            error_message=content.CHANNEL_ERROR,
            resume_template=content.RESUME["channel"],
        ),
        S.TIMESLOT: StateSpec(
            prompt_template=content.TIMESLOT,
            quick_replies=content.TIMESLOT_OPTIONS,
            validator=_menu_validator(content.TIMESLOT_OPTIONS, "timeslot", content.TIMESLOT_ERROR),
            next_state=_after_timeslot,
            error_message=content.TIMESLOT_ERROR,
            resume_template=content.RESUME["timeslot"],
        ),
        S.CUSTOM_TIME: StateSpec(
            prompt_template=content.CUSTOM_TIME,
            validator=validate_custom_time,
            next_state=_always(S.COMPLETE),
            error_message=content.CUSTOM_TIME_ERROR,
            resume_template=content.RESUME["custom_time"],
        ),
        S.COMPLETE: StateSpec(
            prompt_template=content.COMPLETE,
            requires_input=False,
        ),
        S.NUDGE: StateSpec(
            prompt_template=content.NUDGE,
            generic_template=content.NUDGE_GENERIC,
            quick_replies=content.NUDGE_REPLIES,
        ),
    }


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of feeding one message to the state machine."""

    def __init__(
        self,
        success: bool,
        from_state: Optional[ConversationState],
        next_state: ConversationState,
        user_data: dict[str, Any] = None,
        error: str = "",
        error_kind: Optional[str] = None,
        escalated: bool = False,
        message: str = "",
    ):
        self.success = success
        self.from_state = from_state
        self.next_state = next_state
        self.user_data = user_data if user_data is not None else {}
        self.error = error
        self.error_kind = error_kind
        self.escalated = escalated
        self.message = message

    @property
    def transitioned(self) -> bool:
        return self.success and self.from_state != self.next_state

    def __bool__(self):
        return self.success

    def __repr__(self):
        if self.escalated:
            return f"<Escalated {self.from_state} → {self.next_state}>"
        if self.success:
            return f"<Transition {self.from_state} → {self.next_state}>"
        return f"<Rejected {self.from_state} [{self.error_kind}]>"


# ──────────────────────────────────────────────────────────────
#  Conversation State Machine
# ──────────────────────────────────────────────────────────────

class ConversationStateMachine:
    """
    Evaluates visitor input against the transition table.

    Deterministic: no clock, no randomness, no I/O. The same
    (state, text, user_data) always produces the same result.
    """

    def __init__(
        self,
        table: dict[ConversationState, StateSpec] = None,
        max_retries: int = 3,
        reset_user_data_on_escalation: bool = False,
        hotline: str = "1900 6868",
    ):
        self._table = table or build_default_table()
        self.max_retries = max_retries
        self.reset_user_data_on_escalation = reset_user_data_on_escalation
        self.hotline = hotline

        errors = self._validate_table(self._table)
        if errors:
            logger.error("invalid_state_table", errors=errors)
            raise ValueError(f"Invalid state table: {'; '.join(errors)}")

    @classmethod
    def from_settings(cls, settings) -> "ConversationStateMachine":
        return cls(
            max_retries=settings.escalation.max_retries,
            reset_user_data_on_escalation=settings.escalation.reset_user_data,
            hotline=settings.escalation.hotline,
        )

    @staticmethod
    def _validate_table(table: dict[ConversationState, StateSpec]) -> list[str]:
        """Every state defined; every input state has a validator and a rule."""
        errors = []
        for state in ConversationState:
            if state not in table:
                errors.append(f"state '{state.value}' not defined")
        for state, spec in table.items():
            if state in (S.COMPLETE, S.NUDGE):
                continue
            if spec.next_state is None:
                errors.append(f"state '{state.value}' has no next-state rule")
            for target in RULE_TARGETS.get(state, ()):
                if target not in table:
                    errors.append(f"state '{state.value}' targets undefined '{target.value}'")
        if table.get(S.COMPLETE) and table[S.COMPLETE].requires_input:
            errors.append("state 'complete' must not require input")
        return errors

    # ── Processing ────────────────────────────────────────────

    def process(
        self,
        state: Union[ConversationState, str],
        text: str,
        user_data: dict[str, Any] = None,
    ) -> TransitionResult:
        data = dict(user_data or {})
        text = text if isinstance(text, str) else ""

        try:
            current = ConversationState(state)
        except ValueError:
            logger.warning("unknown_conversation_state", state=str(state))
            return TransitionResult(
                success=False,
                from_state=None,
                next_state=S.WELCOME,
                user_data=data,
                error="Invalid state",
                error_kind="INVALID_STATE",
                message=content.UNKNOWN_STATE,
            )

        spec = self._table[current]

        # complete is terminal; nudge replies go through the nudge scheduler
        if current in (S.COMPLETE, S.NUDGE):
            return TransitionResult(
                success=False,
                from_state=current,
                next_state=current,
                user_data=data,
                error_kind="NO_TRANSITION",
            )

        if spec.validator is not None:
            outcome = spec.validator(text, data)
            if not outcome.is_valid:
                return self._reject(current, spec, data, outcome)
            data.update(outcome.extracted_fields)

        data[RETRY_KEY] = 0
        next_state = spec.next_state(text, data)
        return TransitionResult(
            success=True,
            from_state=current,
            next_state=next_state,
            user_data=data,
        )

    def _reject(
        self,
        current: ConversationState,
        spec: StateSpec,
        data: dict[str, Any],
        outcome: ValidationOutcome,
    ) -> TransitionResult:
        retries = int(data.get(RETRY_KEY, 0) or 0) + 1

        if retries >= self.max_retries:
            logger.info("conversation_escalated", state=current.value, retries=retries)
            escalated_data = {} if self.reset_user_data_on_escalation else data
            escalated_data[RETRY_KEY] = 0
            return TransitionResult(
                success=False,
                from_state=current,
                next_state=S.WELCOME,
                user_data=escalated_data,
                error=outcome.error,
                error_kind=outcome.error_kind,
                escalated=True,
                message=self.escalation_message(),
            )

        data[RETRY_KEY] = retries
        return TransitionResult(
            success=False,
            from_state=current,
            next_state=current,
            user_data=data,
            error=outcome.error,
            error_kind=outcome.error_kind,
            message=spec.error_message or outcome.error,
        )

    # ── Messages ──────────────────────────────────────────────

    @staticmethod
    def fill(template: str, data: dict[str, Any]) -> str:
        """Substitute {{name}} placeholders; empty or missing values stay verbatim."""
        def replacer(match):
            value = data.get(match.group(1))
            return str(value) if value else match.group(0)
        return PLACEHOLDER.sub(replacer, template)

    def render(self, state: Union[ConversationState, str], data: dict[str, Any] = None) -> str:
        try:
            spec = self._table[ConversationState(state)]
        except ValueError:
            return content.UNKNOWN_STATE
        return self._render_with_fallback(spec.prompt_template, spec.generic_template, data or {})

    def _render_with_fallback(self, template: str, generic: Optional[str], data: dict) -> str:
        text = self.fill(template, data)
        if generic is not None and PLACEHOLDER.search(text):
            return self.fill(generic, data)
        return text

    def quick_replies(self, state: Union[ConversationState, str]) -> list[str]:
        try:
            return list(self._table[ConversationState(state)].quick_replies)
        except ValueError:
            return []

    def is_terminal(self, state: Union[ConversationState, str]) -> bool:
        try:
            return not self._table[ConversationState(state)].requires_input
        except ValueError:
            return False

    def continuation_message(self, state: ConversationState, data: dict[str, Any] = None) -> str:
        """What to say when a nudged visitor comes back at ``state``."""
        spec = self._table.get(ConversationState(state))
        if spec is None or spec.resume_template is None:
            return content.RESUME_DEFAULT
        return self.fill(spec.resume_template, data or {})

    def closing_message(self, data: dict[str, Any] = None) -> str:
        return self._render_with_fallback(content.CLOSING, content.CLOSING_GENERIC, data or {})

    def escalation_message(self) -> str:
        return self.fill(content.ESCALATION, {"hotline": self.hotline})

    # ── Introspection ─────────────────────────────────────────

    def describe(self, state: Union[ConversationState, str]) -> dict[str, Any]:
        current = ConversationState(state)
        spec = self._table[current]
        return {
            "state": current.value,
            "requires_input": spec.requires_input,
            "quick_replies": list(spec.quick_replies),
            "has_validator": spec.validator is not None,
            "possible_next_states": [s.value for s in RULE_TARGETS.get(current, ())],
            "is_terminal": not spec.requires_input,
        }
