"""Shared test fixtures for the admissions agent."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from context.nudge import NudgeScheduler
from context.sessions import SessionManager
from context.state_machine import ConversationStateMachine
from core import engine as engine_module
from core.leads import LeadService
from core.orchestrator import ChatOrchestrator
from database.store_memory import InMemorySessionStore
from utils.crypto import FieldCipher


TEST_KEY = "0123456789abcdef0123456789abcdef"     # 32 bytes


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSink:
    """Lead sink double that remembers every completed session."""

    def __init__(self):
        self.completed = []

    async def on_session_complete(self, session):
        self.completed.append(session)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def session_manager(memory_store, clock) -> SessionManager:
    return SessionManager(memory_store, expiry=timedelta(hours=24), clock=clock)


@pytest.fixture
def state_machine() -> ConversationStateMachine:
    return ConversationStateMachine()


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher(TEST_KEY)


@pytest.fixture
def lead_service(cipher, clock) -> LeadService:
    return LeadService(cipher, clock=clock)


@pytest.fixture
def nudge_scheduler(session_manager, state_machine) -> NudgeScheduler:
    return NudgeScheduler(session_manager, state_machine, delay_s=60)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def orchestrator(session_manager, state_machine, nudge_scheduler, recording_sink):
    orch = ChatOrchestrator(
        sessions=session_manager,
        machine=state_machine,
        nudges=nudge_scheduler,
        lead_sink=recording_sink,
    )
    yield orch
    await orch.shutdown()


@pytest.fixture(autouse=True)
def _no_llm_cooldown():
    """The rate-limit cooldown is process-wide; isolate it per test."""
    engine_module.clear_cooldown()
    yield
    engine_module.clear_cooldown()
