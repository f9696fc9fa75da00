"""
Core data models for the admissions lead agent.
These are the shared types passed between the state machine, the session
store, the nudge scheduler and the API layer.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConversationState(str, Enum):
    WELCOME = "welcome"
    MAJOR = "major"
    MAJOR_OTHER = "major_other"
    PHONE = "phone"
    CHANNEL = "channel"
    TIMESLOT = "timeslot"
    CUSTOM_TIME = "custom_time"
    COMPLETE = "complete"
    NUDGE = "nudge"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class PhoneErrorKind(str, Enum):
    EMPTY = "EMPTY"
    BAD_CHARACTERS = "BAD_CHARACTERS"
    BAD_PREFIX = "BAD_PREFIX"
    BAD_LENGTH_INTL = "BAD_LENGTH_INTL"
    BAD_LENGTH_DOMESTIC = "BAD_LENGTH_DOMESTIC"
    UNASSIGNED_PREFIX = "UNASSIGNED_PREFIX"


class ProgressiveStatus(str, Enum):
    NEUTRAL = "neutral"
    VALID = "valid"
    INVALID = "invalid"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    CONVERTED = "converted"


# ──────────────────────────────────────────────────────────────
#  Session — one visitor's pass through the admissions dialogue
# ──────────────────────────────────────────────────────────────

class HistoryEntry(BaseModel):
    """One line of the transcript. Never edited after append."""
    role: MessageRole
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)
    quick_replies: list[str] = []


class Session(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = ""
    display_name: str = ""
    current_state: ConversationState = ConversationState.WELCOME
    previous_state: Optional[ConversationState] = None    # resume target while nudged
    user_data: dict[str, Any] = {}
    conversation_history: list[HistoryEntry] = []
    is_completed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def first_name(self) -> str:
        parts = self.display_name.split()
        return parts[0] if parts else ""

    def last_messages(self, n: int = 6) -> list[HistoryEntry]:
        return self.conversation_history[-n:] if n > 0 else []


# ──────────────────────────────────────────────────────────────
#  Phone validation
# ──────────────────────────────────────────────────────────────

class PhoneValidationResult(BaseModel):
    is_valid: bool
    raw_input: Any = None
    cleaned_input: str = ""
    standardized_form: Optional[str] = None    # always the 10-digit domestic form
    network_class: Optional[str] = None
    error_kind: Optional[PhoneErrorKind] = None
    error: str = ""


class ProgressiveResult(BaseModel):
    """Feedback for a partially typed number."""
    status: ProgressiveStatus
    hint: str = ""
    standardized_form: Optional[str] = None


class PhoneFormats(BaseModel):
    standard: str
    international: str
    display: str


# ──────────────────────────────────────────────────────────────
#  Leads — produced once per completed session
# ──────────────────────────────────────────────────────────────

class Lead(BaseModel):
    lead_id: str
    session_id: str
    user_id: str = ""
    display_name: str = ""
    major: str = ""
    phone_encrypted: Optional[str] = None
    phone_standardized_encrypted: Optional[str] = None
    phone_hash: str = ""
    phone_network: str = ""
    channel: str = ""
    timeslot: str = ""
    status: LeadStatus = LeadStatus.NEW
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Orchestrator output
# ──────────────────────────────────────────────────────────────

class ChatReply(BaseModel):
    session_id: str
    state: ConversationState
    message: str
    quick_replies: list[str] = []
    success: bool = True
    error: str = ""
    error_kind: Optional[str] = None
    escalated: bool = False
    completed: bool = False
    fallback: bool = False      # AI phrasing failed, template text was used
