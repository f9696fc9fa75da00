"""Tests for the FastAPI surface."""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import DatabaseConfig, LLMConfig, SecurityConfig, Settings
from utils.crypto import EncryptionKeyError


def make_settings(**overrides) -> Settings:
    settings = Settings(
        llm=LLMConfig(provider="none"),
        database=DatabaseConfig(store_backend="memory"),
        security=SecurityConfig(encryption_key="0123456789abcdef0123456789abcdef"),
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


@pytest.fixture
def client():
    with TestClient(create_app(make_settings())) as c:
        yield c


def start(client, name="Linh Tran") -> str:
    resp = client.post("/api/chat/session", json={"first_name": name})
    assert resp.status_code == 201
    return resp.json()["session_id"]


def say(client, session_id, text):
    return client.post("/api/chat/message", json={"session_id": session_id, "message": text})


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_stats(self, client):
        start(client)
        data = client.get("/api/stats").json()
        assert data["sessions"]["total"] == 1
        assert data["leads"]["total_leads"] == 0


class TestChat:
    def test_create_session(self, client):
        resp = client.post("/api/chat/session", json={"first_name": "Linh"})
        body = resp.json()
        assert body["state"] == "welcome"
        assert body["message"].startswith("Hi Linh")
        assert body["quick_replies"]

    def test_message_flow(self, client):
        sid = start(client)
        assert say(client, sid, "hi").json()["state"] == "major"
        body = say(client, sid, "Design").json()
        assert body["state"] == "phone"
        body = say(client, sid, "0121234567").json()
        assert body["success"] is False
        assert body["error_kind"] == "UNASSIGNED_PREFIX"

    def test_unknown_session_is_404(self, client):
        assert say(client, "missing", "hi").status_code == 404
        assert client.get("/api/chat/session/missing").status_code == 404
        assert client.delete("/api/chat/session/missing").status_code == 404

    def test_get_session_hides_raw_user_data(self, client):
        sid = start(client)
        say(client, sid, "hi")
        say(client, sid, "Design")
        say(client, sid, "0901234567")
        body = client.get(f"/api/chat/session/{sid}").json()
        assert body["current_state"] == "channel"
        assert "user_data" not in body
        assert "phone" in body["collected"]
        assert len(body["conversation_history"]) == 7

    def test_delete_session(self, client):
        sid = start(client)
        assert client.delete(f"/api/chat/session/{sid}").status_code == 200
        assert client.get(f"/api/chat/session/{sid}").status_code == 404

    def test_message_too_long(self, client):
        sid = start(client)
        assert say(client, sid, "x" * 1001).status_code == 422


class TestPhoneValidation:
    def test_partial(self, client):
        body = client.post("/api/phone/validate", json={"phone": "0901"}).json()
        assert body["status"] == "neutral"
        assert body["hint"] == "6 more digits"

    def test_valid(self, client):
        body = client.post("/api/phone/validate", json={"phone": "+84901234567"}).json()
        assert body["status"] == "valid"
        assert body["standardized"] == "0901234567"
        assert body["network"] == "mobifone"

    def test_invalid_has_suggestions(self, client):
        body = client.post("/api/phone/validate", json={"phone": "0121234567"}).json()
        assert body["status"] == "invalid"
        assert body["suggestions"]


class TestLeads:
    def test_completed_dialogue_produces_lead(self, client):
        sid = start(client)
        for text in ("hi", "Design", "0901234567", "Zalo", "Evening"):
            say(client, sid, text)

        body = client.get("/api/leads").json()
        assert body["count"] == 1
        lead = body["leads"][0]
        assert lead["session_id"] == sid
        assert lead["phone_standardized"] == "0901234567"
        assert "phone_encrypted" not in lead

        resp = client.patch(f"/api/leads/{lead['lead_id']}", json={"status": "contacted"})
        assert resp.json()["status"] == "contacted"
        assert client.get("/api/leads", params={"status": "new"}).json()["count"] == 0
        assert client.get(f"/api/leads/{lead['lead_id']}").status_code == 200

    def test_missing_lead(self, client):
        assert client.get("/api/leads/LEAD_0_deadbeef").status_code == 404


def test_bad_encryption_key_fails_startup():
    app = create_app(make_settings(security=SecurityConfig(encryption_key="short")))
    with pytest.raises(EncryptionKeyError):
        with TestClient(app):
            pass
