"""
Prints SMS queue statistics and the state of sending campaigns.

Run: python scripts/queue_stats.py
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

from smsdesk.db.mongo import set_database, get_campaigns_collection
from smsdesk.models.campaign import CampaignStatus
from smsdesk.services.queue_service import sms_queue_service
from utils.time_utils import format_timestamp

MONGODB_URL = os.getenv("MONGODB_URL")
MONGODB_DB_NAME = os.getenv("MONGODB_DB_NAME")

if not MONGODB_URL or not MONGODB_DB_NAME:
    raise ValueError("❌ MONGODB_URL and MONGODB_DB_NAME must be set in .env file")


async def main():
    client = AsyncIOMotorClient(MONGODB_URL)
    try:
        set_database(client[MONGODB_DB_NAME])

        print("=" * 60)
        print("  SMS Queue Statistics")
        print("=" * 60 + "\n")

        stats = await sms_queue_service.get_queue_stats()
        for key in ("queued", "processing", "sent", "failed"):
            print(f"  {key:<12} {stats[key]}")

        sending = await get_campaigns_collection().find(
            {"status": CampaignStatus.SENDING.value}
        ).to_list(length=None)

        print(f"\n📣 Sending campaigns: {len(sending)}")
        for campaign in sending:
            summary = await sms_queue_service.aggregate_message_statuses(campaign)
            print(
                f"  - {campaign.get('name')} ({campaign['_id']}): "
                f"{campaign.get('progress', 0)}% | sent {campaign.get('sent_count', 0)} "
                f"delivered {campaign.get('delivered_count', 0)} failed {campaign.get('failed_count', 0)} "
                f"| pending {summary['pending']}/{summary['total']} | started {format_timestamp(campaign.get('started_at'))}"
            )
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(main())
