import hashlib
import hmac
import json

import httpx
import pytest

from conftest import USER_ID, insert_campaign
from smsdesk.core.config import settings
from smsdesk.main import app
from smsdesk.services.queue_service import sms_queue_service

API = settings.API_PREFIX
HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
async def client(db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def count_messages(client, status):
    response = await client.get(f"{API}/sms/history", headers=HEADERS, params={"status": status})
    return response.json()["total"]


async def test_missing_user_header_is_rejected(client):
    response = await client.get(f"{API}/sms/campaigns")
    assert response.status_code == 401
    assert response.json() == {"error": "Missing X-User-Id header", "code": "AUTHENTICATION_FAILED", "details": None}


async def test_invalid_object_id_is_bad_request(client):
    response = await client.get(f"{API}/sms/campaigns/not-an-id", headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid campaign ID"


async def test_campaign_create_and_start(client, account):
    response = await client.post(f"{API}/sms/campaigns", headers=HEADERS, json={
        "name": "Spring sale",
        "message": "Hello {{firstName}}",
        "contact_list_id": str(account["contact_list_id"]),
        "sender_id": "ACME",
        "provider_id": str(account["provider_id"]),
        "country": "France",
    })
    assert response.status_code == 201
    campaign = response.json()["campaign"]
    assert campaign["status"] == "draft"
    assert campaign["estimated_cost"] == 0.15

    response = await client.post(
        f"{API}/sms/campaigns/{campaign['_id']}/action", headers=HEADERS, json={"action": "start"}
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Campaign start successful"

    # Fan-out runs as a background task after the response
    assert await count_messages(client, "queued") == 3


async def test_refused_action_is_conflict(client, db, account):
    campaign = await insert_campaign(db, account, status="completed")

    response = await client.post(
        f"{API}/sms/campaigns/{campaign['_id']}/action", headers=HEADERS, json={"action": "pause"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


async def test_progress_json(client, db, account):
    campaign = await insert_campaign(db, account, sent_count=2)

    response = await client.get(f"{API}/sms/campaigns/{campaign['_id']}/progress", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["progress"]["sent_count"] == 2
    assert body["progress"]["remaining_count"] == 1


async def test_progress_stream_sends_events(client, db, account):
    campaign = await insert_campaign(db, account, status="completed")

    response = await client.get(
        f"{API}/sms/campaigns/{campaign['_id']}/progress",
        headers={**HEADERS, "Accept": "text/event-stream"},
    )

    assert response.headers["content-type"].startswith("text/event-stream")
    event = response.text.strip()
    assert event.startswith("data: ")
    assert json.loads(event[len("data: "):])["status"] == "completed"


async def test_send_sms_endpoint(client, account):
    response = await client.post(
        f"{API}/sms/send", headers=HEADERS, json={"to": "+33612345601", "message": "Hi", "sender_id": "ACME"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "SMS queued for sending"
    assert body["sms"]["status"] == "queued"
    assert body["sms_info"]["encoding"] == "GSM_7BIT"


async def test_blacklisted_number_endpoints(client, db):
    response = await client.post(
        f"{API}/sms/blacklisted-numbers", headers=HEADERS, json={"phone_number": "+33612345601"}
    )
    assert response.status_code == 201

    response = await client.post(
        f"{API}/sms/blacklisted-numbers", headers=HEADERS, json={"phone_number": "+33612345601"}
    )
    assert response.status_code == 409

    response = await client.delete(
        f"{API}/sms/blacklisted-numbers", headers=HEADERS, params={"phone_number": "+33612345601"}
    )
    assert response.json() == {"success": True}


async def test_contact_import_endpoint(client, db):
    response = await client.post(f"{API}/sms/contact-lists", headers=HEADERS, json={"name": "Leads"})
    list_id = response.json()["contact_list"]["_id"]

    response = await client.post(f"{API}/sms/contact-lists/{list_id}/import", headers=HEADERS, json={
        "contacts": [["+33612345601", "Ada"], ["bad", "Row"]],
        "column_mapping": {"phone_number": 0, "first_name": 1},
    })
    body = response.json()
    assert body["inserted"] == 1
    assert len(body["errors"]) == 1

    response = await client.get(f"{API}/sms/contact-lists/{list_id}/contacts", headers=HEADERS)
    page = response.json()
    assert page["total"] == 1
    assert page["items"][0]["first_name"] == "Ada"


async def _sent_campaign(db, account):
    campaign = await insert_campaign(db, account)
    await sms_queue_service.queue_campaign(campaign["_id"])
    await sms_queue_service.process_queue()
    return campaign


async def test_webhook_applies_internal_report(client, db, account):
    await _sent_campaign(db, account)

    response = await client.post(f"{API}/sms/webhook/delivery", json={
        "messageId": "scripted-1", "status": "delivered", "timestamp": "2026-03-01T10:00:00Z",
    })

    assert response.status_code == 200
    assert response.json()["processed"] is True


async def test_webhook_accepts_twilio_form_posts(client, db, account):
    await _sent_campaign(db, account)

    response = await client.post(
        f"{API}/sms/webhook/delivery",
        content="MessageSid=scripted-2&MessageStatus=delivered",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.json()["success"] is True
    assert response.json()["reason"] == "Successfully processed"


async def test_webhook_missing_message_id(client):
    response = await client.post(f"{API}/sms/webhook/delivery", json={"status": "delivered"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing messageId", "code": "BAD_REQUEST"}


async def test_webhook_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
    body = json.dumps({"messageId": "unknown", "status": "delivered"}).encode()

    response = await client.post(f"{API}/sms/webhook/delivery", content=body, headers={"X-Webhook-Signature": "bad"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"

    signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    response = await client.post(
        f"{API}/sms/webhook/delivery", content=body, headers={"X-Webhook-Signature": signature}
    )
    assert response.status_code == 200
    assert response.json()["reason"] == "Message not found"

    # Unsigned reports pass unless signatures are required
    response = await client.post(f"{API}/sms/webhook/delivery", content=body)
    assert response.status_code == 200


async def test_webhook_source_header_does_not_skip_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
    monkeypatch.setattr(settings, "WEBHOOK_REQUIRE_SIGNATURE", True)
    body = json.dumps({"messageId": "unknown", "status": "delivered"}).encode()

    response = await client.post(
        f"{API}/sms/webhook/delivery", content=body, headers={"X-Webhook-Source": "simulation"}
    )
    assert response.status_code == 401

    response = await client.post(
        f"{API}/sms/webhook/delivery",
        content=body,
        headers={"X-Webhook-Source": "simulation", "X-Webhook-Signature": "deadbeef"},
    )
    assert response.status_code == 401


async def test_admin_endpoints_require_key(client, monkeypatch):
    response = await client.get(f"{API}/admin/sms/queue/stats")
    assert response.status_code == 401

    monkeypatch.setattr(settings, "ADMIN_API_KEY", "admin-key")
    response = await client.get(f"{API}/admin/sms/queue/stats", headers={"X-Admin-Key": "wrong"})
    assert response.json()["error"] == "Invalid admin key"

    response = await client.get(f"{API}/admin/sms/queue/stats", headers={"X-Admin-Key": "admin-key"})
    assert response.status_code == 200
    assert response.json()["queued"] == 0


async def test_admin_keyword_and_trigger(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "admin-key")
    admin = {"X-Admin-Key": "admin-key"}

    response = await client.post(f"{API}/admin/sms/keywords", headers=admin, json={"keyword": "casino"})
    assert response.status_code == 201

    response = await client.get(f"{API}/admin/sms/keywords", headers=admin)
    assert [k["keyword"] for k in response.json()["keywords"]] == ["casino"]

    response = await client.post(f"{API}/admin/sms/queue/trigger", headers=admin)
    assert response.json() == {"success": True, "result": {"timed_out": 0, "attempted": 0}}
