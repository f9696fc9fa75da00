"""
FastAPI Application — REST surface for the admissions chat widget.

Provides:
- Chat session lifecycle (create, message, inspect, delete)
- As-you-type phone validation for the widget's input box
- Lead listing for the admissions team
- Health and stats

All conversation logic lives in core/ and context/; handlers only map
HTTP in and out.
"""
from __future__ import annotations

import logging
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config.settings import Settings, get_settings
from context.nudge import NudgeScheduler
from context.sessions import SessionManager
from context.state_machine import ConversationStateMachine
from core.engine import ReplyEngine
from core.leads import LeadService
from core.orchestrator import ChatOrchestrator
from database.session import init_db
from database.store_factory import create_store, reset_store
from models.schemas import ChatReply, LeadStatus
from utils import phone as phone_validator
from utils.crypto import FieldCipher

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Components:
    orchestrator: ChatOrchestrator
    sessions: SessionManager
    leads: LeadService


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper()) if isinstance(level, str) else level
        ),
    )


def build_components(settings: Settings, engine: Optional[ReplyEngine] = None) -> Components:
    """Wire everything from settings. Raises EncryptionKeyError on a bad key."""
    cipher = FieldCipher.from_settings(settings)

    reset_store()
    store = create_store(settings.database)
    sessions = SessionManager.from_settings(store, settings)
    machine = ConversationStateMachine.from_settings(settings)
    nudges = NudgeScheduler.from_settings(sessions, machine, settings)
    leads = LeadService(cipher)
    if engine is None and settings.llm.provider in ("anthropic", "openai"):
        engine = ReplyEngine(settings.llm)

    orchestrator = ChatOrchestrator(
        sessions=sessions,
        machine=machine,
        nudges=nudges,
        engine=engine,
        lead_sink=leads,
        ai_states=settings.conversation.ai_states,
    )
    return Components(orchestrator=orchestrator, sessions=sessions, leads=leads)


def create_app(settings: Settings = None, engine: Optional[ReplyEngine] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.log_level)

        components = build_components(cfg, engine=engine)
        if cfg.database.store_backend == "sql":
            await init_db()
        await components.orchestrator.start()
        app.state.components = components

        logger.info("admissions_agent_started",
                    store_backend=cfg.database.store_backend,
                    llm_provider=cfg.llm.provider if components.orchestrator.engine else "none")
        yield

        await components.orchestrator.shutdown()
        logger.info("admissions_agent_stopped")

    app = FastAPI(
        title="Admissions Agent API",
        description="Lead-qualification chat for university admissions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def _components(request: Request) -> Components:
    return request.app.state.components


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    first_name: str = Field(default="", max_length=100)
    user_id: Optional[str] = None


class MessageRequest(BaseModel):
    session_id: str
    message: str = Field(max_length=1000)


class PhoneCheckRequest(BaseModel):
    phone: str = Field(default="", max_length=40)


class LeadStatusRequest(BaseModel):
    status: LeadStatus


def _reply_payload(reply: ChatReply) -> dict[str, Any]:
    return reply.model_dump(mode="json")


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        c = _components(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_nudge_timers": c.orchestrator.nudges.active_count,
        }

    @app.get("/api/stats")
    async def stats(request: Request):
        c = _components(request)
        return {"sessions": await c.sessions.stats(), "leads": c.leads.stats()}

    # ══════════════════════════════════════════════════════════
    #  CHAT
    # ══════════════════════════════════════════════════════════

    @app.post("/api/chat/session", status_code=201)
    async def create_session(req: CreateSessionRequest, request: Request):
        reply = await _components(request).orchestrator.start_session(
            user_id=req.user_id, display_name=req.first_name,
        )
        return _reply_payload(reply)

    @app.post("/api/chat/message")
    async def post_message(req: MessageRequest, request: Request):
        reply = await _components(request).orchestrator.handle_message(req.session_id, req.message)
        if reply is None:
            raise HTTPException(404, "Session not found")
        return _reply_payload(reply)

    @app.get("/api/chat/session/{session_id}")
    async def get_session(session_id: str, request: Request):
        session = await _components(request).orchestrator.get_session(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        return session.model_dump(mode="json", exclude={"user_data"}) | {
            "collected": sorted(k for k, v in session.user_data.items()
                                if v and k != "retry_count"),
        }

    @app.delete("/api/chat/session/{session_id}")
    async def delete_session(session_id: str, request: Request):
        deleted = await _components(request).orchestrator.end_session(session_id)
        if not deleted:
            raise HTTPException(404, "Session not found")
        return {"status": "deleted", "session_id": session_id}

    # ══════════════════════════════════════════════════════════
    #  PHONE VALIDATION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/phone/validate")
    async def validate_phone(req: PhoneCheckRequest):
        progress = phone_validator.validate_progressive(req.phone)
        full = phone_validator.validate(req.phone)
        return {
            "status": progress.status.value,
            "hint": progress.hint,
            "standardized": progress.standardized_form,
            "network": full.network_class if full.is_valid else None,
            "suggestions": phone_validator.error_suggestions(full.error_kind)
            if progress.status.value == "invalid" else [],
        }

    # ══════════════════════════════════════════════════════════
    #  LEADS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/leads")
    async def list_leads(
        request: Request,
        status: Optional[LeadStatus] = None,
        major: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        leads = _components(request).leads
        items = leads.list_leads(status=status, major=major, limit=limit, offset=offset)
        return {"leads": [leads.to_public_dict(l) for l in items], "count": len(items)}

    @app.get("/api/leads/{lead_id}")
    async def get_lead(lead_id: str, request: Request):
        leads = _components(request).leads
        lead = leads.get_lead(lead_id)
        if lead is None:
            raise HTTPException(404, "Lead not found")
        return leads.to_public_dict(lead)

    @app.patch("/api/leads/{lead_id}")
    async def update_lead_status(lead_id: str, req: LeadStatusRequest, request: Request):
        leads = _components(request).leads
        lead = leads.update_status(lead_id, req.status)
        if lead is None:
            raise HTTPException(404, "Lead not found")
        return leads.to_public_dict(lead)


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
