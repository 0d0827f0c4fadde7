"""
Tests for the HTTP surface: webhook verification and enqueueing, the ticket
status signal, and the admin endpoints.

The app is exercised without its lifespan, so no consumer drains the
incoming queue and enqueued jobs stay visible through /api/v1/queue/stats.
"""
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from api.main import app

from conftest import WA_PHONE, WA_USER


@pytest.fixture
def client():
    return TestClient(app)


def incoming_depth(client) -> int:
    return client.get("/api/v1/queue/stats").json()["incoming_queue_depth"]


def signed(body: bytes, secret: str = "wa-secret") -> dict:
    return {
        "X-Hub-Signature-256": "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest(),
        "Content-Type": "application/json",
    }


WA_BODY = json.dumps({"entry": [{"changes": [{"value": {"messages": [
    {"from": WA_PHONE, "id": "wamid.api.1", "type": "text", "text": {"body": "oi"}},
]}}]}]}).encode()


# ──────────────────────────────────────────────────────────────
#  Health
# ──────────────────────────────────────────────────────────────

class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert set(data["channels"]) == {"whatsapp", "telegram"}

    def test_channel_health(self, client):
        data = client.get("/api/v1/channels/health").json()
        assert data["whatsapp"]["circuit_breaker"]["state"] == "closed"
        assert "telegram" in data

    def test_unknown_delivery(self, client):
        assert client.get("/api/v1/deliveries/missing").status_code == 404


# ──────────────────────────────────────────────────────────────
#  WhatsApp webhook
# ──────────────────────────────────────────────────────────────

class TestWhatsAppWebhook:
    def test_subscription_challenge(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.json() == 1158201444

    def test_wrong_verify_token(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1",
        })
        assert resp.status_code == 403

    def test_signed_event_is_enqueued(self, client):
        before = incoming_depth(client)
        resp = client.post("/webhooks/whatsapp", content=WA_BODY, headers=signed(WA_BODY))

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["job_id"].startswith("job_")
        assert incoming_depth(client) == before + 1

    @pytest.mark.parametrize("headers", [
        {"X-Hub-Signature-256": "sha256=deadbeef"},
        {},
    ])
    def test_bad_signature_is_rejected(self, client, headers):
        before = incoming_depth(client)
        resp = client.post("/webhooks/whatsapp", content=WA_BODY, headers=headers)
        assert resp.status_code == 403
        assert incoming_depth(client) == before

    def test_invalid_json(self, client):
        body = b"not json"
        assert client.post("/webhooks/whatsapp", content=body, headers=signed(body)).status_code == 400


# ──────────────────────────────────────────────────────────────
#  Telegram webhook
# ──────────────────────────────────────────────────────────────

class TestTelegramWebhook:
    UPDATE = {"update_id": 501, "message": {"message_id": 1, "chat": {"id": 42}, "text": "oi"}}

    def test_secret_token_required(self, client):
        assert client.post("/webhooks/telegram", json=self.UPDATE).status_code == 403
        resp = client.post("/webhooks/telegram", json=self.UPDATE,
                           headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"})
        assert resp.status_code == 403

    def test_update_is_enqueued(self, client):
        before = incoming_depth(client)
        resp = client.post("/webhooks/telegram", json=self.UPDATE,
                           headers={"X-Telegram-Bot-Api-Secret-Token": "tg-secret"})
        assert resp.status_code == 200
        assert incoming_depth(client) == before + 1


# ──────────────────────────────────────────────────────────────
#  Ticket status signal
# ──────────────────────────────────────────────────────────────

class TestTicketStatus:
    def test_closed_signal_is_queued(self, client):
        before = incoming_depth(client)
        resp = client.post("/api/v1/tickets/status",
                           json={"type": "ticket_status", "status": "closed", "userId": WA_USER,
                                 "ticketNumber": 12})
        assert resp.status_code == 200
        assert resp.json()["status"] == "queued"
        assert incoming_depth(client) == before + 1

    def test_invalid_status(self, client):
        resp = client.post("/api/v1/tickets/status", json={"status": "archived", "userId": WA_USER})
        assert resp.status_code == 422


# ──────────────────────────────────────────────────────────────
#  Admin
# ──────────────────────────────────────────────────────────────

class TestAdmin:
    def test_publish_and_read_active_flow(self, client, support_flow):
        resp = client.post("/api/v1/flows", json=support_flow)
        assert resp.json() == {"status": "published", "flow_id": "flow-support"}

        active = client.get("/api/v1/flows/active").json()
        assert active["id"] == "flow-support"
        assert active["start"] == "welcome"

    def test_publish_invalid_flow(self, client):
        resp = client.post("/api/v1/flows", json={"start": "a", "blocks": {"a": {"type": "carousel"}}})
        assert resp.status_code == 422

    def test_queue_hours(self, client):
        resp = client.put("/api/v1/queues/Suporte/hours", json={
            "timezone": "America/Sao_Paulo",
            "hours": {"mon": [{"start": "09:00", "end": "18:00"}]},
            "holidays": ["2025-12-25"],
        })
        assert resp.json() == {"status": "ok", "queue_name": "Suporte"}

    def test_queue_hours_validation(self, client):
        resp = client.put("/api/v1/queues/Suporte/hours", json={"holidays": "sometimes"})
        assert resp.status_code == 422
