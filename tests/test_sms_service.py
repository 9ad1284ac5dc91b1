from datetime import datetime

import pytest
from bson import ObjectId

from conftest import USER_ID, insert_campaign
from smsdesk.core.exceptions import ValidationError
from smsdesk.services import blacklist_service, sms_service
from smsdesk.services.queue_service import sms_queue_service


async def test_single_send_is_priced_by_longest_prefix(db, account):
    result = await sms_service.send_single_sms(USER_ID, "+33 6 12 34 56 01", "Your code is 1234", sender_id="ACME")

    message = result["message"]
    assert message["status"] == "queued"
    assert message["to"] == "+33612345601"
    assert message["from"] == "ACME"
    assert message["cost"] == 0.07
    assert message["prefix"] == "336"
    assert message["message_type"] == "single"
    assert "campaign_id" not in message
    assert result["sms_info"]["sms_count"] == 1


async def test_single_send_is_picked_up_by_worker(db, account, gateway):
    result = await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")

    await sms_queue_service.process_queue()

    stored = await db.sms_messages.find_one({"_id": result["message"]["_id"]})
    assert stored["status"] == "sent"
    assert len(gateway.sent) == 1


async def test_blacklisted_recipient_is_recorded_as_blocked(db, account):
    await blacklist_service.add_number(USER_ID, "+33612345601")

    with pytest.raises(ValidationError, match="blacklisted"):
        await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")

    blocked = await db.sms_messages.find_one({"to": "+33612345601"})
    assert blocked["status"] == "blocked"
    assert blocked["cost"] == 0


@pytest.mark.parametrize("to, message, sender, error", [
    ("", "Hi", None, "Phone number and message are required"),
    ("12", "Hi", None, "Invalid phone number format"),
    ("+33612345601", "Hi", "NOPE", "Invalid or unapproved sender ID"),
    ("+4915112345678", "Hi", None, "No rate found for destination number: +4915112345678"),
])
async def test_single_send_validation(db, account, to, message, sender, error):
    with pytest.raises(ValidationError) as exc:
        await sms_service.send_single_sms(USER_ID, to, message, sender_id=sender)
    assert exc.value.message == error


async def test_single_send_blocked_keyword(db, account):
    await blacklist_service.add_keyword("casino")

    with pytest.raises(ValidationError) as exc:
        await sms_service.send_single_sms(USER_ID, "+33612345601", "casino night")
    assert exc.value.details == {"blocked_keywords": ["casino"]}


async def test_requested_provider_must_be_assigned(db, account):
    with pytest.raises(ValidationError, match="Requested gateway not assigned"):
        await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi", provider_id=ObjectId())

    await db.sms_providers.update_many({}, {"$set": {"is_active": False}})
    with pytest.raises(ValidationError, match="No available SMS gateways"):
        await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")


async def test_history_filters_and_names(db, account):
    campaign = await insert_campaign(db, account)
    await sms_queue_service.queue_campaign(campaign["_id"])
    await sms_service.send_single_sms(USER_ID, "+32470123456", "Bonjour Bruxelles")

    items, total = await sms_service.list_history(USER_ID, {"message_type": "campaign"})
    assert total == 3
    assert {i["campaign_name"] for i in items} == {"Spring sale"}
    assert {i["provider_name"] for i in items} == {"test-provider"}

    items, total = await sms_service.list_history(USER_ID, {"search": "bruxelles"})
    assert total == 1
    assert items[0]["to"] == "+32470123456"
    assert items[0]["campaign_name"] is None

    items, total = await sms_service.list_history(USER_ID, page=2, limit=2)
    assert total == 4
    assert len(items) == 2


async def test_history_is_tenant_scoped(db, account):
    await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")
    await db.sms_messages.insert_one({"user_id": "someone-else", "to": "+33612345699", "created_at": datetime.utcnow()})

    items, total = await sms_service.list_history(USER_ID)
    assert total == 1


async def test_history_search_matches_literal_text(db, account):
    await sms_service.send_single_sms(USER_ID, "+33612345601", "Promo (50% off)")
    await sms_service.send_single_sms(USER_ID, "+33612345602", "Hi")

    items, total = await sms_service.list_history(USER_ID, {"search": "+33612345601"})
    assert total == 1
    assert items[0]["to"] == "+33612345601"

    items, total = await sms_service.list_history(USER_ID, {"search": "(50%"})
    assert total == 1

    items, total = await sms_service.list_history(USER_ID, {"search": ".*"})
    assert total == 0
