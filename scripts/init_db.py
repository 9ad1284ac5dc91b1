"""
Database initialization script

Creates all indexes. Optionally seeds a simulation provider, a rate deck
and an approved sender ID for one user so campaigns can run end to end:

    python scripts/init_db.py
    python scripts/init_db.py --seed-user <user_id>
"""

import asyncio
import sys
from pathlib import Path
from datetime import datetime
import os
from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables
load_dotenv()

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
import logging

from smsdesk.db.mongo import set_database
from smsdesk.db.indexes import create_indexes
from smsdesk.services.rate_service import SMS_RATE_DECK_TYPE

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


# MongoDB connection - load from .env
MONGODB_URL = os.getenv("MONGODB_URL")
MONGODB_DB_NAME = os.getenv("MONGODB_DB_NAME")

if not MONGODB_URL or not MONGODB_DB_NAME:
    raise ValueError("❌ MONGODB_URL and MONGODB_DB_NAME must be set in .env file")

SIMULATION_RATES = [
    {"country": "France", "prefix": "33", "rate": 0.045},
    {"country": "Belgium", "prefix": "32", "rate": 0.06},
    {"country": "United States", "prefix": "1", "rate": 0.0075},
    {"country": "United Kingdom", "prefix": "44", "rate": 0.04},
]


async def seed_simulation(db, user_id: str):
    """Creates simulation provider, rate deck and sender ID for a user."""
    now = datetime.utcnow()

    provider = await db.sms_providers.find_one_and_update(
        {"name": "simulation-standard"},
        {"$setOnInsert": {
            "name": "simulation-standard",
            "display_name": "Simulation (standard)",
            "provider": "simulation",
            "is_active": True,
            "supported_countries": [],
            "rate_limit": {"messages_per_second": 5, "messages_per_minute": 100, "messages_per_hour": 1000},
            "settings": {"simulation_type": "standard"},
            "created_at": now,
            "updated_at": now,
        }},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info(f"  ✅ Provider: {provider['_id']}")

    await db.sms_provider_assignments.update_one(
        {"user_id": user_id, "provider_id": provider["_id"]},
        {"$setOnInsert": {"is_active": True, "priority": 1, "created_at": now, "updated_at": now}},
        upsert=True,
    )

    deck = await db.sms_rate_decks.find_one_and_update(
        {"name": "Simulation SMS rates"},
        {"$setOnInsert": {"currency": "USD", "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    for rate in SIMULATION_RATES:
        await db.sms_rates.update_one(
            {"rate_deck_id": deck["_id"], "country": rate["country"]},
            {"$set": {**rate, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
    await db.rate_deck_assignments.update_one(
        {"user_id": user_id, "rate_deck_type": SMS_RATE_DECK_TYPE},
        {"$set": {"rate_deck_id": deck["_id"], "is_active": True, "updated_at": now},
         "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    logger.info(f"  ✅ Rate deck: {deck['_id']} ({len(SIMULATION_RATES)} rates)")

    await db.sms_sender_ids.update_one(
        {"user_id": user_id, "sender_id": "SMSDESK"},
        {"$set": {"status": "approved", "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    logger.info("  ✅ Sender ID: SMSDESK (approved)")


async def main():
    """Main initialization"""
    logger.info("=" * 60)
    logger.info("  SMSDesk Database Setup")
    logger.info("=" * 60 + "\n")

    seed_user = None
    if "--seed-user" in sys.argv:
        index = sys.argv.index("--seed-user")
        if index + 1 >= len(sys.argv):
            raise SystemExit("Usage: python scripts/init_db.py [--seed-user <user_id>]")
        seed_user = sys.argv[index + 1]

    logger.info(f"🔌 Connecting to MongoDB: {MONGODB_DB_NAME}")
    client = AsyncIOMotorClient(MONGODB_URL)
    db = client[MONGODB_DB_NAME]

    try:
        await client.admin.command('ping')
        logger.info("✅ Connected successfully\n")

        set_database(db)
        await create_indexes()

        if seed_user:
            logger.info(f"\n🌱 Seeding simulation setup for user {seed_user}...")
            await seed_simulation(db, seed_user)

        logger.info("\n✅ Database initialization complete!")

    except Exception as e:
        logger.error(f"\n❌ Error: {e}")
        raise

    finally:
        client.close()

    logger.info("\n" + "=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
