"""
smsdesk/services/rate_service.py

Purpose: SMS pricing lookups

- Active SMS rate deck assignment per user
- Country and longest-prefix rate lookup
- Campaign cost estimation
"""

from typing import Optional, Dict, Any

from smsdesk.db.mongo import (
    get_rates_collection,
    get_rate_deck_assignments_collection,
    get_contact_lists_collection,
)
from smsdesk.core.logging import get_logger
from utils.sms_utils import strip_international_prefix

logger = get_logger(__name__)

SMS_RATE_DECK_TYPE = "sms"


async def get_rate_deck_assignment(user_id: str) -> Optional[Dict[str, Any]]:
    """
    Returns the user's active SMS rate deck assignment, if any.
    """
    return await get_rate_deck_assignments_collection().find_one({
        "user_id": user_id,
        "rate_deck_type": SMS_RATE_DECK_TYPE,
        "is_active": True,
    })


async def get_rate_for_country(rate_deck_id, country: str) -> Optional[Dict[str, Any]]:
    return await get_rates_collection().find_one({
        "rate_deck_id": rate_deck_id,
        "country": country,
    })


async def find_rate_for_number(rate_deck_id, phone_number: str) -> Optional[Dict[str, Any]]:
    """
    Finds the rate whose prefix is the longest match for the number.

    Args:
        rate_deck_id: Rate deck to search
        phone_number: Destination number

    Returns:
        Rate document or None
    """
    digits = strip_international_prefix(phone_number)
    if not digits:
        return None

    rates = await get_rates_collection().find({"rate_deck_id": rate_deck_id}).to_list(length=None)

    best = None
    best_length = 0
    for rate in rates:
        prefix = (rate.get("prefix") or "").lstrip("+")
        if prefix and digits.startswith(prefix) and len(prefix) > best_length:
            best = rate
            best_length = len(prefix)

    return best


async def estimate_campaign_cost(user_id: str, contact_list_id, country: str) -> float:
    """
    Estimates campaign cost as country rate x stored contact count.

    Returns 0 when the user has no SMS rate deck or no rate for the country.
    """
    assignment = await get_rate_deck_assignment(user_id)
    if not assignment:
        return 0.0

    rate = await get_rate_for_country(assignment["rate_deck_id"], country)
    if not rate:
        return 0.0

    contact_list = await get_contact_lists_collection().find_one({"_id": contact_list_id})
    contact_count = (contact_list or {}).get("contact_count", 0)

    return round(float(rate.get("rate", 0)) * contact_count, 2)
