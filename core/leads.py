"""
Lead Service — turns completed sessions into sales leads.

Implements the lead sink the orchestrator notifies when a session reaches
``complete``. Phone numbers are stored encrypted (FieldCipher) alongside a
sha256 digest for lookups; they are decrypted only on explicit reads, and
a field that fails to decrypt is reported as None without failing the rest
of the lead.

Leads are kept in process memory.
"""
from __future__ import annotations

import uuid
import structlog
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from models.schemas import Lead, LeadStatus, Session
from utils.crypto import DecryptionError, FieldCipher

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_lead_id(now: datetime) -> str:
    return f"LEAD_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


class LeadService:

    def __init__(self, cipher: FieldCipher, clock: Callable[[], datetime] = None):
        self.cipher = cipher
        self._clock = clock or _utcnow
        self._leads: dict[str, Lead] = {}           # lead_id → lead
        self._by_session: dict[str, str] = {}       # session_id → lead_id

    # ── Sink ──────────────────────────────────────────────────

    async def on_session_complete(self, session: Session) -> Optional[Lead]:
        """Create the session's lead. Idempotent per session."""
        if session.id in self._by_session:
            logger.debug("lead_already_exists", session_id=session.id)
            return self._leads[self._by_session[session.id]]

        data = session.user_data or {}
        phone = data.get("phone")
        if not phone:
            # declined before giving a number; nothing to follow up on
            logger.info("lead_skipped_no_phone", session_id=session.id)
            return None

        now = self._clock()
        standardized = data.get("phone_standardized") or ""
        lead = Lead(
            lead_id=new_lead_id(now),
            session_id=session.id,
            user_id=session.user_id,
            display_name=session.display_name,
            major=data.get("major", ""),
            phone_encrypted=self.cipher.encrypt(str(phone)),
            phone_standardized_encrypted=self.cipher.encrypt_optional(standardized),
            phone_hash=self.cipher.hash(standardized or str(phone)),
            phone_network=data.get("phone_network", ""),
            channel=data.get("channel", ""),
            timeslot=data.get("timeslot", ""),
            created_at=now,
            updated_at=now,
        )
        self._leads[lead.lead_id] = lead
        self._by_session[session.id] = lead.lead_id
        logger.info("lead_created", lead_id=lead.lead_id, session_id=session.id,
                    major=lead.major, channel=lead.channel)
        return lead

    # ── Reads ─────────────────────────────────────────────────

    def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy() if lead else None

    def get_lead_by_session(self, session_id: str) -> Optional[Lead]:
        lead_id = self._by_session.get(session_id)
        return self.get_lead(lead_id) if lead_id else None

    def find_by_phone(self, raw_standardized: str) -> list[Lead]:
        digest = self.cipher.hash(raw_standardized)
        return [l.model_copy() for l in self._leads.values() if l.phone_hash == digest]

    def list_leads(
        self,
        status: Optional[LeadStatus] = None,
        major: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Lead]:
        leads = sorted(self._leads.values(), key=lambda l: l.created_at, reverse=True)
        if status is not None:
            leads = [l for l in leads if l.status == LeadStatus(status)]
        if major:
            leads = [l for l in leads if l.major.lower() == major.lower()]
        return [l.model_copy() for l in leads[offset:offset + limit]]

    # ── Updates ───────────────────────────────────────────────

    def update_status(self, lead_id: str, status: LeadStatus) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        if lead is None:
            return None
        new_status = LeadStatus(status)
        updated = lead.model_copy(update={"status": new_status, "updated_at": self._clock()})
        self._leads[lead_id] = updated
        logger.info("lead_status_updated", lead_id=lead_id,
                    old=lead.status.value, new=new_status.value)
        return updated.model_copy()

    def delete_lead(self, lead_id: str) -> bool:
        lead = self._leads.pop(lead_id, None)
        if lead is None:
            return False
        self._by_session.pop(lead.session_id, None)
        return True

    # ── Decryption ────────────────────────────────────────────

    def _decrypt_field(self, lead: Lead, field_name: str) -> Optional[str]:
        value = getattr(lead, field_name)
        if not value:
            return None
        try:
            return self.cipher.decrypt(value)
        except DecryptionError as e:
            logger.error("lead_field_decrypt_failed", lead_id=lead.lead_id,
                         field=field_name, kind=e.kind)
            return None

    def reveal_phone(self, lead: Lead) -> dict[str, Optional[str]]:
        return {
            "phone": self._decrypt_field(lead, "phone_encrypted"),
            "phone_standardized": self._decrypt_field(lead, "phone_standardized_encrypted"),
        }

    def to_public_dict(self, lead: Lead) -> dict[str, Any]:
        data = lead.model_dump(
            mode="json",
            exclude={"phone_encrypted", "phone_standardized_encrypted", "phone_hash"},
        )
        data.update(self.reveal_phone(lead))
        return data

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        leads = list(self._leads.values())
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "total_leads": len(leads),
            "leads_today": sum(1 for l in leads if l.created_at >= start_of_day),
            "leads_this_week": sum(1 for l in leads if l.created_at >= now - timedelta(days=7)),
            "status_breakdown": {
                s.value: sum(1 for l in leads if l.status == s) for s in LeadStatus
            },
            "popular_majors": [
                {"major": m, "count": c}
                for m, c in Counter(l.major for l in leads if l.major).most_common(5)
            ],
            "channel_preferences": dict(Counter(l.channel for l in leads if l.channel)),
        }
