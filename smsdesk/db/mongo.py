"""
smsdesk/db/mongo.py

Purpose: MongoDB connection setup

- Initializes Motor client with connection pooling
- One collection per SMS back-office entity
- Health checks and retry logic
- Proper connection lifecycle management
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError
from typing import Optional
import asyncio
from smsdesk.core.config import settings
from smsdesk.core.logging import get_logger

logger = get_logger(__name__)

# Collection names
PROVIDERS = "sms_providers"
PROVIDER_ASSIGNMENTS = "sms_provider_assignments"
RATE_DECKS = "sms_rate_decks"
RATES = "sms_rates"
RATE_DECK_ASSIGNMENTS = "rate_deck_assignments"
SENDER_IDS = "sms_sender_ids"
KEYWORD_BLACKLIST = "sms_keyword_blacklist"
BLACKLISTED_NUMBERS = "sms_blacklisted_numbers"
CONTACT_LISTS = "sms_contact_lists"
CONTACTS = "sms_contacts"
CAMPAIGNS = "sms_campaigns"
MESSAGES = "sms_messages"
DELIVERY_RECEIPTS = "sms_delivery_receipts"
BILLING_SETTINGS = "sms_billing_settings"
BILLINGS = "sms_billings"

# Global MongoDB client
_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None

async def connect_to_mongo():
    """
    Establishes connection to MongoDB with retry logic.
    Called during application startup.
    """
    global _client, _database

    if _client is not None:
        logger.warning("MongoDB client already initialized")
        return

    max_retries = 3
    retry_delay = 2

    for attempt in range(1, max_retries + 1):
        try:
            logger.info(
                f"Attempting to connect to MongoDB (attempt {attempt}/{max_retries})"
            )

            # Fix URL encoding for special characters
            mongodb_url = settings.MONGODB_URL.replace("%%", "%25")

            _client = AsyncIOMotorClient(
                mongodb_url,
                maxPoolSize=50,
                minPoolSize=10,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                retryWrites=True,
                retryReads=True,
            )

            _database = _client[settings.MONGODB_DB_NAME]

            # Verify connection
            await _client.admin.command("ping")

            logger.info(
                f"✅ Successfully connected to MongoDB: {settings.MONGODB_DB_NAME}"
            )
            return

        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error(
                f"Failed to connect to MongoDB (attempt {attempt}/{max_retries}): {e}"
            )
            _client = None
            _database = None

            if attempt < max_retries:
                logger.info(f"Retrying in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.critical("Failed to connect to MongoDB after all retries")
                raise ConnectionError("Could not establish MongoDB connection") from e

async def close_mongo_connection():
    """
    Closes the MongoDB connection.
    Called during application shutdown.
    """
    global _client, _database

    if _client:
        logger.info("Closing MongoDB connection")
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")

def set_database(database: Optional[AsyncIOMotorDatabase]):
    """
    Binds an already-created database handle (scripts and tests).
    """
    global _database
    _database = database

async def check_database_health() -> bool:
    """
    Checks if the database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        if _client is None:
            logger.error("MongoDB client not initialized")
            return False

        await _client.admin.command("ping")
        return True

    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        return False

def get_collection(name: str):
    """
    Returns a collection of the connected database.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _database is None:
        raise RuntimeError(
            "Database not initialized. Call connect_to_mongo() during startup."
        )
    return _database[name]

def get_providers_collection():
    return get_collection(PROVIDERS)

def get_provider_assignments_collection():
    return get_collection(PROVIDER_ASSIGNMENTS)

def get_rates_collection():
    return get_collection(RATES)

def get_rate_deck_assignments_collection():
    return get_collection(RATE_DECK_ASSIGNMENTS)

def get_sender_ids_collection():
    return get_collection(SENDER_IDS)

def get_keyword_blacklist_collection():
    return get_collection(KEYWORD_BLACKLIST)

def get_blacklisted_numbers_collection():
    return get_collection(BLACKLISTED_NUMBERS)

def get_contact_lists_collection():
    return get_collection(CONTACT_LISTS)

def get_contacts_collection():
    return get_collection(CONTACTS)

def get_campaigns_collection():
    """
    Returns the campaigns collection.

    Counter fields (sent_count, delivered_count, failed_count) are only ever
    written through the bounded updates in the queue and delivery services.
    """
    return get_collection(CAMPAIGNS)

def get_messages_collection():
    """
    Returns the messages collection.

    Message status lifecycle:
    queued -> processing -> sent -> delivered | failed | undelivered
    queued <-> paused, and failed/blocked at fan-out time.
    """
    return get_collection(MESSAGES)

def get_delivery_receipts_collection():
    return get_collection(DELIVERY_RECEIPTS)

def get_billing_settings_collection():
    return get_collection(BILLING_SETTINGS)

def get_billings_collection():
    return get_collection(BILLINGS)
