"""
smsdesk/db/indexes.py

Purpose: Database index management

- Creates unique and performance indexes
- Unique keys back the duplicate-prevention guarantees
- TTL index for delivery receipt cleanup
"""

from pymongo import ASCENDING, DESCENDING

from smsdesk.db.mongo import (
    get_blacklisted_numbers_collection,
    get_campaigns_collection,
    get_contact_lists_collection,
    get_contacts_collection,
    get_delivery_receipts_collection,
    get_keyword_blacklist_collection,
    get_messages_collection,
    get_provider_assignments_collection,
    get_rates_collection,
    get_rate_deck_assignments_collection,
    get_sender_ids_collection,
    get_billings_collection,
)
from smsdesk.core.logging import get_logger

logger = get_logger(__name__)

DELIVERY_RECEIPT_TTL_SECONDS = 7 * 24 * 3600


async def create_indexes():
    """
    Creates all necessary database indexes.
    This function is idempotent - safe to run multiple times.
    """
    try:
        campaigns = get_campaigns_collection()
        messages = get_messages_collection()
        contacts = get_contacts_collection()
        receipts = get_delivery_receipts_collection()

        logger.info("Creating database indexes...")

        # ==============================================
        # CAMPAIGNS
        # ==============================================
        await campaigns.create_index(
            [("user_id", ASCENDING), ("status", ASCENDING)],
            name="user_status_idx"
        )
        await campaigns.create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)],
            name="user_created_idx"
        )
        await campaigns.create_index("scheduled_at", name="scheduled_at_idx", sparse=True)
        logger.debug("Created campaign indexes")

        # ==============================================
        # MESSAGES
        # ==============================================

        # One message per contact per campaign run; makes fan-out re-runs idempotent
        await messages.create_index(
            [("campaign_id", ASCENDING), ("campaign_run", ASCENDING), ("contact_id", ASCENDING)],
            unique=True,
            sparse=True,
            name="campaign_contact_unique"
        )
        await messages.create_index(
            [("status", ASCENDING), ("created_at", ASCENDING)],
            name="status_created_idx"
        )
        await messages.create_index(
            [("campaign_id", ASCENDING), ("status", ASCENDING)],
            name="campaign_status_idx"
        )
        await messages.create_index("message_id", name="provider_message_id_idx", sparse=True)
        await messages.create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)],
            name="user_history_idx"
        )
        logger.debug("Created message indexes")

        # ==============================================
        # CONTACTS
        # ==============================================
        await contacts.create_index(
            [("contact_list_id", ASCENDING), ("phone_number", ASCENDING)],
            unique=True,
            name="list_phone_unique"
        )
        await get_contact_lists_collection().create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)],
            name="user_lists_idx"
        )
        logger.debug("Created contact indexes")

        # ==============================================
        # DELIVERY RECEIPTS
        # ==============================================
        await receipts.create_index("key", unique=True, name="receipt_key_unique")
        await receipts.create_index(
            "received_at",
            expireAfterSeconds=DELIVERY_RECEIPT_TTL_SECONDS,
            name="receipt_ttl_idx"
        )
        logger.debug("Created delivery receipt indexes")

        # ==============================================
        # REFERENCE DATA
        # ==============================================
        await get_blacklisted_numbers_collection().create_index(
            [("user_id", ASCENDING), ("phone_number", ASCENDING)],
            unique=True,
            name="user_phone_unique"
        )
        await get_keyword_blacklist_collection().create_index(
            "keyword", unique=True, name="keyword_unique"
        )
        await get_sender_ids_collection().create_index(
            [("user_id", ASCENDING), ("sender_id", ASCENDING)],
            name="user_sender_idx"
        )
        await get_rates_collection().create_index(
            [("rate_deck_id", ASCENDING), ("country", ASCENDING)],
            name="deck_country_idx"
        )
        await get_rate_deck_assignments_collection().create_index(
            [("user_id", ASCENDING), ("rate_deck_type", ASCENDING), ("is_active", ASCENDING)],
            name="user_deck_type_idx"
        )
        await get_provider_assignments_collection().create_index(
            [("user_id", ASCENDING), ("is_active", ASCENDING)],
            name="user_active_idx"
        )
        await get_billings_collection().create_index(
            [("user_id", ASCENDING), ("campaign_id", ASCENDING), ("campaign_run", ASCENDING)],
            name="user_campaign_run_idx"
        )

        logger.info("✅ All database indexes created successfully")

        message_indexes = await messages.index_information()
        campaign_indexes = await campaigns.index_information()
        logger.info(
            f"Index summary: Messages={len(message_indexes)}, "
            f"Campaigns={len(campaign_indexes)}"
        )

    except Exception as e:
        logger.error(f"Failed to create indexes: {str(e)}", exc_info=True)
        raise


if __name__ == "__main__":
    """
    Run this script directly to create indexes manually.
    """
    import asyncio
    from smsdesk.db.mongo import connect_to_mongo, close_mongo_connection

    async def main():
        await connect_to_mongo()
        await create_indexes()
        await close_mongo_connection()

    asyncio.run(main())
