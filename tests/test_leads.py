"""Tests for LeadService — lead creation, encryption and reporting."""
import re
import pytest

from core.leads import LeadService
from models.schemas import LeadStatus, Session


def completed_session(sid="s1", **data) -> Session:
    user_data = {
        "major": "Design",
        "phone": "+84 901 234 567",
        "phone_standardized": "0901234567",
        "phone_network": "mobifone",
        "channel": "Zalo",
        "timeslot": "Evening",
    }
    user_data.update(data)
    return Session(id=sid, user_id="u1", display_name="Linh Tran",
                   user_data=user_data, is_completed=True)


class TestLeadCreation:
    @pytest.mark.asyncio
    async def test_lead_from_completed_session(self, lead_service, clock):
        lead = await lead_service.on_session_complete(completed_session())
        assert re.fullmatch(r"LEAD_\d+_[0-9a-f]{8}", lead.lead_id)
        assert lead.major == "Design"
        assert lead.channel == "Zalo"
        assert lead.timeslot == "Evening"
        assert lead.status == LeadStatus.NEW
        assert lead.created_at == clock()

    @pytest.mark.asyncio
    async def test_phone_is_encrypted_at_rest(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        assert "0901234567" not in (lead.phone_encrypted or "")
        assert "0901234567" not in (lead.phone_standardized_encrypted or "")
        assert lead_service.reveal_phone(lead) == {
            "phone": "+84 901 234 567",
            "phone_standardized": "0901234567",
        }

    @pytest.mark.asyncio
    async def test_idempotent_per_session(self, lead_service):
        first = await lead_service.on_session_complete(completed_session())
        second = await lead_service.on_session_complete(completed_session())
        assert first.lead_id == second.lead_id
        assert len(lead_service.list_leads()) == 1

    @pytest.mark.asyncio
    async def test_no_phone_no_lead(self, lead_service):
        session = Session(id="s2", user_data={"major": "Design"}, is_completed=True)
        assert await lead_service.on_session_complete(session) is None
        assert lead_service.list_leads() == []


class TestLeadQueries:
    @pytest.mark.asyncio
    async def test_lookups(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        assert lead_service.get_lead(lead.lead_id).session_id == "s1"
        assert lead_service.get_lead_by_session("s1").lead_id == lead.lead_id
        assert [l.lead_id for l in lead_service.find_by_phone("0901234567")] == [lead.lead_id]
        assert lead_service.get_lead("missing") is None

    @pytest.mark.asyncio
    async def test_list_filters(self, lead_service, clock):
        await lead_service.on_session_complete(completed_session("s1"))
        clock.advance(minutes=1)
        await lead_service.on_session_complete(completed_session("s2", major="Languages"))
        assert [l.session_id for l in lead_service.list_leads()] == ["s2", "s1"]
        assert [l.session_id for l in lead_service.list_leads(major="design")] == ["s1"]
        assert len(lead_service.list_leads(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_update_status(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        updated = lead_service.update_status(lead.lead_id, "contacted")
        assert updated.status == LeadStatus.CONTACTED
        assert lead_service.list_leads(status=LeadStatus.CONTACTED)[0].lead_id == lead.lead_id
        assert lead_service.update_status("missing", LeadStatus.CONVERTED) is None

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        with pytest.raises(ValueError):
            lead_service.update_status(lead.lead_id, "lost")

    @pytest.mark.asyncio
    async def test_delete(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        assert lead_service.delete_lead(lead.lead_id) is True
        assert lead_service.get_lead_by_session("s1") is None
        assert lead_service.delete_lead(lead.lead_id) is False


class TestLeadViews:
    @pytest.mark.asyncio
    async def test_public_dict_hides_ciphertext(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        view = lead_service.to_public_dict(lead)
        assert "phone_encrypted" not in view
        assert "phone_hash" not in view
        assert view["phone_standardized"] == "0901234567"
        assert view["status"] == "new"

    @pytest.mark.asyncio
    async def test_corrupt_field_is_isolated(self, lead_service):
        lead = await lead_service.on_session_complete(completed_session())
        broken = lead.model_copy(update={"phone_encrypted": "garbage"})
        view = lead_service.to_public_dict(broken)
        assert view["phone"] is None
        assert view["phone_standardized"] == "0901234567"
        assert view["major"] == "Design"

    @pytest.mark.asyncio
    async def test_stats(self, lead_service):
        await lead_service.on_session_complete(completed_session("s1"))
        await lead_service.on_session_complete(completed_session("s2"))
        await lead_service.on_session_complete(completed_session("s3", major="IT", channel="Call"))
        stats = lead_service.stats()
        assert stats["total_leads"] == 3
        assert stats["leads_today"] == 3
        assert stats["status_breakdown"]["new"] == 3
        assert stats["popular_majors"][0] == {"major": "Design", "count": 2}
        assert stats["channel_preferences"] == {"Zalo": 2, "Call": 1}


def test_service_requires_cipher_key():
    from utils.crypto import EncryptionKeyError, FieldCipher
    with pytest.raises(EncryptionKeyError):
        LeadService(FieldCipher(""))
