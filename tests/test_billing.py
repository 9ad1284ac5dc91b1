from datetime import datetime

import pytest

from conftest import USER_ID, insert_campaign
from smsdesk.core.exceptions import ValidationError
from smsdesk.services import billing_service, campaign_service, sms_service
from smsdesk.services.queue_service import sms_queue_service


async def test_completed_campaign_is_billed_once(db, account):
    campaign = await insert_campaign(db, account)
    await sms_queue_service.queue_campaign(campaign["_id"])
    await sms_queue_service.process_queue()

    billings = await db.sms_billings.find({"campaign_id": campaign["_id"]}).to_list(length=None)
    assert len(billings) == 1
    billing = billings[0]
    assert billing["status"] == "pending"
    assert billing["currency"] == "EUR"
    assert billing["total_messages"] == 3
    assert billing["total_cost"] == pytest.approx(0.15)
    assert billing["message_breakdown"][0]["prefix"] == "33"
    assert billing["message_breakdown"][0]["country"] == "France"

    assert await billing_service.process_campaign_billing(campaign["_id"]) is None
    assert await db.sms_billings.count_documents({}) == 1


async def test_each_campaign_run_is_billed(db, account, gateway):
    campaign = await insert_campaign(db, account)
    await sms_queue_service.queue_campaign(campaign["_id"])
    await sms_queue_service.process_queue()

    await campaign_service.perform_action(campaign["_id"], USER_ID, "restart")
    await campaign_service.perform_action(campaign["_id"], USER_ID, "start")
    await campaign_service.process_campaign(campaign["_id"], USER_ID)
    await sms_queue_service.process_queue()

    billings = await db.sms_billings.find({"campaign_id": campaign["_id"]}).sort("campaign_run", 1).to_list(length=None)
    assert [b["campaign_run"] for b in billings] == [1, 2]
    assert [b["total_messages"] for b in billings] == [3, 3]

    assert await billing_service.process_campaign_billing(campaign["_id"]) is None


async def test_unfinished_campaign_is_not_billed(db, account):
    campaign = await insert_campaign(db, account)
    assert await billing_service.process_campaign_billing(campaign["_id"]) is None


async def test_default_global_settings_are_created(db):
    settings = await billing_service.get_settings_for_user(USER_ID)
    assert settings["user_id"] is None
    assert settings["billing_frequency"] == "daily"
    assert await db.sms_billing_settings.count_documents({}) == 1


async def test_threshold_billing_for_single_sends(db, account):
    await db.sms_billing_settings.insert_one({
        "user_id": USER_ID,
        "billing_frequency": "threshold",
        "max_amount": 100,
        "max_messages": 2,
        "auto_processing": True,
        "is_active": True,
    })
    await db.sms_messages.insert_one({
        "user_id": USER_ID,
        "to": "+33612345602",
        "status": "sent",
        "message_type": "single",
        "cost": 0.07,
        "prefix": "336",
        "created_at": datetime.utcnow(),
    })

    await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")

    billing = await db.sms_billings.find_one({"billing_type": "single"})
    assert billing is not None
    assert billing["campaign_id"] is None
    assert billing["total_messages"] == 1
    assert billing["notes"].startswith("Threshold reached")


async def test_pending_billing_blocks_manual_accounts(db, account):
    await db.sms_billing_settings.insert_one({
        "user_id": USER_ID,
        "billing_frequency": "daily",
        "auto_processing": False,
        "is_active": True,
    })
    await db.sms_billings.insert_one({"user_id": USER_ID, "billing_type": "single", "status": "pending"})

    with pytest.raises(ValidationError, match="SMS blocked: User has pending billings"):
        await sms_service.send_single_sms(USER_ID, "+33612345601", "Hi")
