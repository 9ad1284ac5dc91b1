"""
Runs campaign counter reconciliation once.

Run: python scripts/sync_counters.py [campaign_id]
"""

import asyncio
import sys
from pathlib import Path
import os
from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables
load_dotenv()

from motor.motor_asyncio import AsyncIOMotorClient
import logging

from smsdesk.db.mongo import set_database
from smsdesk.services.queue_service import sms_queue_service
from utils.validation_utils import parse_object_id

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

MONGODB_URL = os.getenv("MONGODB_URL")
MONGODB_DB_NAME = os.getenv("MONGODB_DB_NAME")

if not MONGODB_URL or not MONGODB_DB_NAME:
    raise ValueError("❌ MONGODB_URL and MONGODB_DB_NAME must be set in .env file")


async def main():
    campaign_id = None
    if len(sys.argv) > 1:
        campaign_id = parse_object_id(sys.argv[1])
        if campaign_id is None:
            print(f"❌ Invalid campaign ID: {sys.argv[1]}")
            sys.exit(1)

    client = AsyncIOMotorClient(MONGODB_URL)
    try:
        set_database(client[MONGODB_DB_NAME])
        target = str(campaign_id) if campaign_id else "recent campaigns"
        logger.info(f"🔧 Synchronizing counters of {target}...")
        corrected = await sms_queue_service.synchronize_campaign_counters(campaign_id)
        logger.info(f"✅ {corrected} campaign(s) corrected")
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(main())
