import asyncio
import hashlib
import hmac
from datetime import datetime

from conftest import insert_campaign
from smsdesk.core.config import settings
from smsdesk.services.delivery_service import (
    DeliveryReport,
    normalize_delivery_report,
    process_delivery_report,
    verify_signature,
)
from smsdesk.services.queue_service import sms_queue_service

REPORTED_AT = "2026-03-01T10:00:00Z"


def test_normalize_twilio():
    report = normalize_delivery_report({
        "MessageSid": "SM123",
        "MessageStatus": "undelivered",
        "ErrorCode": "30003",
        "ErrorMessage": "Unreachable",
    })
    assert report.message_id == "SM123"
    assert report.status == "failed"
    assert report.error_code == "30003"
    assert report.provider_id == "twilio"

    assert normalize_delivery_report({"MessageSid": "SM1", "MessageStatus": "expired"}).status == "expired"


def test_normalize_aws_sns():
    report = normalize_delivery_report({
        "notification": {"messageId": "aws-1", "status": "SUCCESS", "timestamp": REPORTED_AT}
    })
    assert report.status == "delivered"
    assert report.timestamp == REPORTED_AT
    assert report.provider_id == "aws-sns"


def test_normalize_messagebird():
    report = normalize_delivery_report({
        "id": "mb-1",
        "status": "delivery_failed",
        "errors": [{"code": 25, "description": "Not enough balance"}],
    })
    assert report.status == "failed"
    assert report.error_code == "25"
    assert report.error_message == "Not enough balance"


def test_normalize_smsenvoi():
    report = normalize_delivery_report({
        "order_id": "ord-1",
        "status": "DLVRD",
        "delivery_date": "20260301100000",
        "recipient": "+33612345601",
    })
    assert report.status == "delivered"
    assert report.timestamp == "2026-03-01T10:00:00Z"
    assert report.error_code is None
    assert report.recipient == "+33612345601"

    expired = normalize_delivery_report({"order_id": "ord-2", "status": "EXPRD", "delivery_date": "20260301100000"})
    assert expired.status == "expired"
    assert expired.error_message == "Message expired before delivery"


def test_normalize_internal_format():
    report = normalize_delivery_report({
        "messageId": "sim_1",
        "status": "delivered",
        "timestamp": REPORTED_AT,
        "providerId": "simulation",
    })
    assert report.message_id == "sim_1"
    assert report.status == "delivered"
    assert report.provider_id == "simulation"


def test_signature_verification(monkeypatch):
    body = b'{"messageId": "x"}'
    assert verify_signature(body, None)

    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
    good = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert verify_signature(body, good)
    assert verify_signature(body, good.upper())
    assert not verify_signature(body, "deadbeef")
    assert verify_signature(body, None)

    monkeypatch.setattr(settings, "WEBHOOK_REQUIRE_SIGNATURE", True)
    assert not verify_signature(body, None)
    assert verify_signature(body, good)


async def _sent_campaign(db, account):
    campaign = await insert_campaign(db, account)
    await sms_queue_service.queue_campaign(campaign["_id"])
    await sms_queue_service.process_queue()
    return campaign


async def test_delivered_report_moves_sent_to_delivered(db, account):
    campaign = await _sent_campaign(db, account)

    result = await process_delivery_report(
        DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT)
    )

    assert result["processed"] is True
    assert result["campaign_id"] == str(campaign["_id"])
    message = await db.sms_messages.find_one({"message_id": "scripted-1"})
    assert message["status"] == "delivered"
    assert message["delivered_at"] == datetime(2026, 3, 1, 10, 0, 0)

    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert stored["sent_count"] == 2
    assert stored["delivered_count"] == 1
    assert stored["actual_cost"] == 0.05


async def test_expired_report_fails_message(db, account):
    campaign = await _sent_campaign(db, account)

    result = await process_delivery_report(DeliveryReport(
        message_id="scripted-2", status="expired", timestamp=REPORTED_AT,
        error_message="Message expired before delivery",
    ))

    assert result["processed"] is True
    message = await db.sms_messages.find_one({"message_id": "scripted-2"})
    assert message["status"] == "failed"
    assert message["error_message"] == "Message expired before delivery"
    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert (stored["sent_count"], stored["failed_count"]) == (2, 1)


async def test_duplicate_report_is_ignored(db, account):
    campaign = await _sent_campaign(db, account)
    report = DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT)

    await process_delivery_report(report)
    result = await process_delivery_report(report)

    assert result["processed"] is False
    assert result["reason"] == "Duplicate delivery report"
    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert stored["delivered_count"] == 1


async def test_terminal_status_is_not_overwritten(db, account):
    await _sent_campaign(db, account)
    await process_delivery_report(DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT))

    result = await process_delivery_report(
        DeliveryReport(message_id="scripted-1", status="failed", timestamp="2026-03-01T10:05:00Z")
    )

    assert result["processed"] is False
    assert result["reason"] == "Invalid status transition: delivered → failed"
    message = await db.sms_messages.find_one({"message_id": "scripted-1"})
    assert message["status"] == "delivered"


async def test_same_status_needs_no_change(db, account):
    await _sent_campaign(db, account)

    result = await process_delivery_report(DeliveryReport(message_id="scripted-1", status="sent", timestamp=REPORTED_AT))

    assert result["processed"] is False
    assert result["reason"] == "No status change required"


async def test_unknown_message_releases_receipt(db):
    result = await process_delivery_report(DeliveryReport(message_id="nope", status="delivered", timestamp=REPORTED_AT))

    assert result == {"processed": False, "reason": "Message not found", "message_id": None, "campaign_id": None}
    assert await db.sms_delivery_receipts.count_documents({}) == 0


async def test_report_matches_internal_object_id(db, account):
    await _sent_campaign(db, account)
    message = await db.sms_messages.find_one({"message_id": "scripted-3"})

    result = await process_delivery_report(
        DeliveryReport(message_id=str(message["_id"]), status="delivered", timestamp=REPORTED_AT)
    )

    assert result["processed"] is True
    assert result["message_id"] == str(message["_id"])


async def test_paused_campaign_counters_are_left_for_sync(db, account):
    campaign = await _sent_campaign(db, account)
    await db.sms_campaigns.update_one({"_id": campaign["_id"]}, {"$set": {"status": "paused"}})

    result = await process_delivery_report(
        DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT)
    )

    assert result["processed"] is True
    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert (stored["sent_count"], stored["delivered_count"]) == (3, 0)


async def test_concurrent_identical_reports_apply_once(db, account):
    campaign = await _sent_campaign(db, account)
    report = DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT)

    results = await asyncio.gather(*[process_delivery_report(report) for _ in range(4)])

    assert sorted(r["processed"] for r in results) == [False, False, False, True]
    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert (stored["sent_count"], stored["delivered_count"]) == (2, 1)
    assert stored["actual_cost"] == 0.05


async def test_concurrent_conflicting_reports_apply_once(db, account):
    campaign = await _sent_campaign(db, account)

    results = await asyncio.gather(
        process_delivery_report(DeliveryReport(message_id="scripted-1", status="delivered", timestamp=REPORTED_AT)),
        process_delivery_report(
            DeliveryReport(message_id="scripted-1", status="failed", timestamp="2026-03-01T10:00:05Z")
        ),
    )

    assert [r["processed"] for r in results].count(True) == 1
    message = await db.sms_messages.find_one({"message_id": "scripted-1"})
    assert message["status"] in ("delivered", "failed")

    stored = await db.sms_campaigns.find_one({"_id": campaign["_id"]})
    assert stored["sent_count"] == 2
    assert stored["delivered_count"] + stored["failed_count"] == 1
