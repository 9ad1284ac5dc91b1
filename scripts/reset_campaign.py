"""
Resets a campaign to a clean draft and deletes all of its messages.

Run: python scripts/reset_campaign.py <campaign_id>
"""

import asyncio
import sys
from pathlib import Path
from datetime import datetime
import os
from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables
load_dotenv()

from motor.motor_asyncio import AsyncIOMotorClient
import logging

from smsdesk.db.mongo import set_database, get_campaigns_collection, get_messages_collection
from smsdesk.models.campaign import CampaignStatus
from utils.validation_utils import parse_object_id

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

MONGODB_URL = os.getenv("MONGODB_URL")
MONGODB_DB_NAME = os.getenv("MONGODB_DB_NAME")

if not MONGODB_URL or not MONGODB_DB_NAME:
    raise ValueError("❌ MONGODB_URL and MONGODB_DB_NAME must be set in .env file")


async def reset_campaign(campaign_id) -> bool:
    campaign = await get_campaigns_collection().find_one({"_id": campaign_id})
    if not campaign:
        logger.error("❌ Campaign not found")
        return False

    logger.info(f"📋 Campaign: {campaign.get('name')} ({campaign.get('status')})")
    logger.info(f"📊 Contact count: {campaign.get('contact_count', 0)}")

    deleted = await get_messages_collection().delete_many({"campaign_id": campaign_id})
    logger.info(f"🗑️  Deleted {deleted.deleted_count} messages")

    await get_campaigns_collection().update_one(
        {"_id": campaign_id},
        {
            "$set": {
                "status": CampaignStatus.DRAFT.value,
                "sent_count": 0,
                "failed_count": 0,
                "delivered_count": 0,
                "progress": 0,
                "actual_cost": 0,
                "error_message": None,
                "started_at": None,
                "completed_at": None,
                "updated_at": datetime.utcnow(),
            },
            "$inc": {"run": 1},
        },
    )
    logger.info("🔄 Campaign counters and status reset")
    return True


async def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/reset_campaign.py <campaign_id>")
        sys.exit(1)

    campaign_id = parse_object_id(sys.argv[1])
    if campaign_id is None:
        print(f"❌ Invalid campaign ID: {sys.argv[1]}")
        sys.exit(1)

    client = AsyncIOMotorClient(MONGODB_URL)
    try:
        set_database(client[MONGODB_DB_NAME])
        ok = await reset_campaign(campaign_id)
    finally:
        client.close()

    if not ok:
        sys.exit(1)
    logger.info("✅ Campaign reset. Start it again from the API when ready.")


if __name__ == "__main__":
    asyncio.run(main())
