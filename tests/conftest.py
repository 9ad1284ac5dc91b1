import random
from datetime import datetime

import pytest
from mongomock_motor import AsyncMongoMockClient

from smsdesk.core.config import settings
from smsdesk.db.mongo import set_database
from smsdesk.db.indexes import create_indexes
from smsdesk.models.campaign import new_campaign_document
from smsdesk.services.providers import BaseGateway, SendResult, register_gateway, _GATEWAYS
from smsdesk.services.queue_service import sms_queue_service

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

FRENCH_NUMBERS = ["+33612345601", "+33612345602", "+33612345603"]


class ScriptedGateway(BaseGateway):
    """
    Returns queued results in order, then succeeds.
    An Exception instance in the queue is raised instead.
    """

    provider_type = "scripted"

    def __init__(self):
        self.results = []
        self.sent = []

    async def send(self, provider, message):
        self.sent.append(message)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SendResult(success=True, message_id=f"scripted-{len(self.sent)}")


class FixedRandom(random.Random):
    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
async def db(monkeypatch):
    monkeypatch.setattr(settings, "SMS_QUEUE_SEND_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", None)

    database = AsyncMongoMockClient()["smsdesk_test"]
    set_database(database)
    await create_indexes()
    sms_queue_service.reset()

    yield database

    sms_queue_service.reset()
    set_database(None)


@pytest.fixture
def gateway():
    scripted = ScriptedGateway()
    register_gateway("scripted", scripted)
    yield scripted
    _GATEWAYS.pop("scripted", None)


async def seed_account(database, user_id=USER_ID, phones=FRENCH_NUMBERS, provider_type="scripted"):
    """
    Provider, rate deck (France 0.05), approved sender ID and a contact list.
    """
    now = datetime.utcnow()

    provider = await database.sms_providers.insert_one({
        "name": "test-provider",
        "provider": provider_type,
        "is_active": True,
        "supported_countries": [],
        "rate_limit": {"messages_per_second": 100, "messages_per_minute": 1000, "messages_per_hour": 10000},
        "settings": {},
        "created_at": now,
    })
    await database.sms_provider_assignments.insert_one({
        "user_id": user_id,
        "provider_id": provider.inserted_id,
        "is_active": True,
        "priority": 1,
    })

    deck = await database.sms_rate_decks.insert_one({"name": "Test deck", "currency": "USD"})
    await database.sms_rates.insert_many([
        {"rate_deck_id": deck.inserted_id, "country": "France", "prefix": "33", "rate": 0.05},
        {"rate_deck_id": deck.inserted_id, "country": "France Mobile", "prefix": "336", "rate": 0.07},
        {"rate_deck_id": deck.inserted_id, "country": "Belgium", "prefix": "32", "rate": 0.06},
    ])
    await database.rate_deck_assignments.insert_one({
        "user_id": user_id,
        "rate_deck_id": deck.inserted_id,
        "rate_deck_type": "sms",
        "is_active": True,
    })
    await database.sms_sender_ids.insert_one({"user_id": user_id, "sender_id": "ACME", "status": "approved"})

    contact_list = await database.sms_contact_lists.insert_one({
        "user_id": user_id,
        "name": "Customers",
        "contact_count": len(phones),
        "is_active": True,
        "created_at": now,
    })
    contacts = await database.sms_contacts.insert_many([
        {
            "user_id": user_id,
            "contact_list_id": contact_list.inserted_id,
            "phone_number": phone,
            "first_name": f"Contact{i}",
            "is_active": True,
            "custom_fields": {},
            "created_at": now,
        }
        for i, phone in enumerate(phones, start=1)
    ])

    return {
        "user_id": user_id,
        "provider_id": provider.inserted_id,
        "rate_deck_id": deck.inserted_id,
        "contact_list_id": contact_list.inserted_id,
        "contact_ids": contacts.inserted_ids,
    }


async def insert_campaign(database, account, status="sending", message="Hello {{firstName}}", **overrides):
    campaign = new_campaign_document(
        user_id=account["user_id"],
        name="Spring sale",
        message=message,
        contact_list_id=account["contact_list_id"],
        sender_id="ACME",
        provider_id=account["provider_id"],
        country="France",
        contact_count=overrides.pop("contact_count", 3),
        estimated_cost=0.15,
    )
    campaign["status"] = status
    campaign.update(overrides)
    result = await database.sms_campaigns.insert_one(campaign)
    campaign["_id"] = result.inserted_id
    return campaign


@pytest.fixture
async def account(db, gateway):
    return await seed_account(db)
