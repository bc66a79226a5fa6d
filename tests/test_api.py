# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
import types

import pytest
from fastapi.testclient import TestClient

from campaign_mailer import api
from campaign_mailer.api import API_TOKEN_HEADER_NAME, coerce_epoch, create_app


API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.failures = {}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.failures:
            return self.failures[cmd]
        if cmd in ("status", "suspend", "activate"):
            return {"ok": True, "active": cmd != "suspend"}
        if cmd == "listCampaigns":
            return {"ok": True, "campaigns": []}
        if cmd == "createCampaign":
            return {"ok": True, "campaign": {"id": 1, "status": "draft"}}
        if cmd == "unsubscribeToken":
            if payload["token"] == "good":
                return {"ok": True, "email": "ann@example.com"}
            return {"ok": False, "error": "expired"}
        return {"ok": True, "cmd": cmd}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_health_needs_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_scheduler_commands(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True, "active": True}
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/suspend").json() == {"ok": True, "active": False}
    assert client.post("/commands/activate").json() == {"ok": True, "active": True}
    assert client.post("/commands/tick").json()["ok"] is True

    assert [cmd for cmd, _ in svc.calls] == ["status", "run now", "suspend", "activate", "tick"]


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"


def test_tenant_endpoints_dispatch_payloads(client_and_service):
    client, svc = client_and_service

    assert client.post("/tenant", json={"id": "acme", "plan_tier": "pro"}).json()["ok"] is True
    client.put("/tenant/acme", json={"timezone": "Europe/Rome"})
    client.post("/tenant/acme/bonus", json={"amount": 5000, "expiry_ts": "2025-07-01T00:00:00Z"})
    client.get("/tenant/acme/quota")

    assert svc.calls[0] == (
        "addTenant",
        {"id": "acme", "name": None, "plan_tier": "pro", "timezone": "UTC", "active": True},
    )
    assert svc.calls[1] == ("updateTenant", {"timezone": "Europe/Rome", "tenant_id": "acme"})
    assert svc.calls[2] == ("grantBonus", {"amount": 5000, "expiry_ts": 1751328000, "tenant_id": "acme"})
    assert svc.calls[3] == ("getQuota", {"tenant_id": "acme"})


def test_bonus_rejects_negative_amount(client_and_service):
    client, svc = client_and_service
    response = client.post("/tenant/acme/bonus", json={"amount": -1, "expiry_ts": 1})
    assert response.status_code == 422
    assert svc.calls == []


def test_contact_payload_validation(client_and_service):
    client, svc = client_and_service

    response = client.post("/contact", json={"tenant_id": "acme", "email": "a@b.c", "status": "unsubscribed"})
    assert response.status_code == 422

    response = client.put("/contact/3/status", json={"status": "pending"})
    assert response.status_code == 422

    response = client.put("/contact/3/status", json={"status": "confirmed"})
    assert response.status_code == 200
    assert svc.calls == [("setContactStatus", {"contact_id": 3, "status": "confirmed"})]


def test_contact_lookup_by_email(client_and_service):
    client, svc = client_and_service

    response = client.get("/contacts/lookup", params={"tenant_id": "acme", "email": "ann@example.com"})

    assert response.status_code == 200
    assert svc.calls == [("getContact", {"tenant_id": "acme", "email": "ann@example.com"})]
    assert client.get("/contacts/lookup", params={"tenant_id": "acme"}).status_code == 422

def test_campaign_create_and_schedule(client_and_service):
    client, svc = client_and_service

    response = client.post(
        "/campaign",
        json={"tenant_id": "acme", "subject": "June", "included_tag_ids": [2, 1], "status_filters": ["active"]},
    )
    assert response.json()["campaign"] == {"id": 1, "status": "draft"}
    assert svc.calls[0] == (
        "createCampaign",
        {"tenant_id": "acme", "subject": "June", "included_tag_ids": [2, 1], "status_filters": ["active"]},
    )

    client.post("/campaign/1/schedule", json={"scheduled_for": "1750000000"})
    assert svc.calls[1] == ("scheduleCampaign", {"scheduled_for": 1750000000, "wait": False, "campaign_id": 1})

    client.post("/campaign/1/send-now")
    assert svc.calls[2] == ("sendNow", {"campaign_id": 1, "wait": False})


def test_campaign_rejects_unknown_status_filter(client_and_service):
    client, _ = client_and_service
    response = client.post("/campaign", json={"tenant_id": "acme", "status_filters": ["bounced"]})
    assert response.status_code == 422


@pytest.mark.parametrize(
    "code,status_code",
    [
        ("tenant_not_found", 404),
        ("campaign_not_found", 404),
        ("not_found", 404),
        ("invalid_state", 409),
        ("duplicate_contact", 409),
        ("duplicate_tag", 409),
        ("missing_field", 400),
        ("configuration_error", 400),
        (None, 400),
    ],
)
def test_error_codes_map_to_http_status(client_and_service, code, status_code):
    client, svc = client_and_service
    svc.failures["getCampaign"] = {"ok": False, "error": "nope", "code": code}

    response = client.get("/campaign/9")

    assert response.status_code == status_code
    assert response.json()["detail"] == "nope"


def test_delivery_events(client_and_service):
    client, svc = client_and_service

    response = client.post(
        "/events",
        json={"events": [{"message_id": "m1", "event_type": "opened", "event_ts": 1750000000}]},
    )
    assert response.status_code == 200
    assert svc.calls[0] == (
        "recordEvents",
        {"events": [{"message_id": "m1", "event_type": "opened", "event_ts": 1750000000, "metadata": {}}]},
    )


def test_ses_endpoint_requires_object(client_and_service):
    client, svc = client_and_service

    assert client.post("/events/ses", json=[1, 2]).status_code == 400
    assert client.post("/events/ses", content=b"{not json", headers={"Content-Type": "application/json"}).status_code == 400

    record = {"eventType": "Open", "mail": {"messageId": "abc"}}
    assert client.post("/events/ses", json=record).status_code == 200
    assert svc.calls == [("recordSesNotification", record)]


def test_unsubscribe_is_public():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))

    response = client.get("/unsubscribe", params={"token": "good"})
    assert response.status_code == 200
    assert "ann@example.com" in response.text

    response = client.post("/unsubscribe", params={"token": "good"})
    assert response.status_code == 200

    response = client.get("/unsubscribe", params={"token": "bad"})
    assert response.status_code == 400
    assert "invalid or has expired" in response.text


def test_coerce_epoch():
    assert coerce_epoch(None) is None
    assert coerce_epoch("") is None
    assert coerce_epoch(12.7) == 12
    assert coerce_epoch("1750000000") == 1750000000
    assert coerce_epoch("2025-06-15T15:06:40Z") == 1750000000
    assert coerce_epoch("2025-06-15T17:06:40+02:00") == 1750000000
    with pytest.raises(ValueError):
        coerce_epoch(True)
