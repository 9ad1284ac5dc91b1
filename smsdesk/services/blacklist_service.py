"""
smsdesk/services/blacklist_service.py

Purpose: Number and keyword blacklists

- Per-user and global blacklisted phone numbers
- Keyword blacklist check for outgoing message text
- Trigger statistics for matched keywords
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional

from pymongo.errors import DuplicateKeyError

from smsdesk.db.mongo import (
    get_blacklisted_numbers_collection,
    get_keyword_blacklist_collection,
)
from smsdesk.core.exceptions import ConflictError, ResourceNotFoundError, ValidationError
from smsdesk.core.logging import get_logger
from utils.sms_utils import normalize_phone

logger = get_logger(__name__)


@dataclass
class KeywordCheck:
    """Result of scanning a message against the keyword blacklist."""
    blocked: bool = False
    matched_keywords: List[str] = field(default_factory=list)


# ==============================================
# NUMBERS
# ==============================================

async def is_blacklisted(user_id: str, phone_number: str) -> bool:
    """
    Checks whether a number is blacklisted for the user or globally.

    Args:
        user_id: Tenant ID
        phone_number: Number in any common format

    Returns:
        True if the number must not receive messages
    """
    normalized = normalize_phone(phone_number)
    entry = await get_blacklisted_numbers_collection().find_one({
        "phone_number": normalized,
        "$or": [{"user_id": user_id}, {"is_global": True}],
    })
    return entry is not None


async def add_number(user_id: str, phone_number: str, reason: Optional[str] = None) -> Dict[str, Any]:
    normalized = normalize_phone(phone_number)
    if not normalized:
        raise ValidationError("Phone number is required")

    doc = {
        "user_id": user_id,
        "phone_number": normalized,
        "is_global": False,
        "reason": reason,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }

    try:
        result = await get_blacklisted_numbers_collection().insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError("Phone number is already blacklisted")

    doc["_id"] = result.inserted_id
    logger.info(f"Blacklisted number added: {normalized}", extra={"user_id": user_id})
    return doc


async def remove_number(user_id: str, phone_number: str) -> bool:
    """
    Removes a user's own blacklist entry. Global entries are untouched.
    """
    normalized = normalize_phone(phone_number)
    result = await get_blacklisted_numbers_collection().delete_one({
        "user_id": user_id,
        "phone_number": normalized,
        "is_global": {"$ne": True},
    })
    if result.deleted_count == 0:
        raise ResourceNotFoundError("Blacklisted number not found")

    logger.info(f"Blacklisted number removed: {normalized}", extra={"user_id": user_id})
    return True


async def list_numbers(user_id: str) -> List[Dict[str, Any]]:
    cursor = get_blacklisted_numbers_collection().find(
        {"$or": [{"user_id": user_id}, {"is_global": True}]}
    ).sort("created_at", -1)
    return await cursor.to_list(length=None)


# ==============================================
# KEYWORDS
# ==============================================

def _keyword_matches(text: str, keyword: Dict[str, Any]) -> bool:
    """
    Exact-match keywords must appear as whole words; others as substrings.
    """
    word = keyword.get("keyword") or ""
    if not word:
        return False

    case_sensitive = keyword.get("is_case_sensitive", False)

    if keyword.get("is_exact_match", False):
        flags = 0 if case_sensitive else re.IGNORECASE
        return re.search(rf"\b{re.escape(word)}\b", text, flags) is not None

    if case_sensitive:
        return word in text
    return word.lower() in text.lower()


async def check_message(text: str) -> KeywordCheck:
    """
    Scans message text against all active blacklisted keywords.

    Matched keywords have their trigger statistics updated.

    Args:
        text: Message content

    Returns:
        KeywordCheck(blocked, matched_keywords)
    """
    collection = get_keyword_blacklist_collection()
    keywords = await collection.find({"is_active": True}).to_list(length=None)

    matched = [kw for kw in keywords if _keyword_matches(text or "", kw)]
    if not matched:
        return KeywordCheck()

    await collection.update_many(
        {"_id": {"$in": [kw["_id"] for kw in matched]}},
        {
            "$inc": {"trigger_count": 1},
            "$set": {"last_triggered_at": datetime.utcnow()},
        },
    )

    names = [kw["keyword"] for kw in matched]
    logger.warning(f"🚫 Message blocked by keywords: {', '.join(names)}")
    return KeywordCheck(blocked=True, matched_keywords=names)


async def add_keyword(
    keyword: str,
    is_exact_match: bool = False,
    is_case_sensitive: bool = False,
) -> Dict[str, Any]:
    keyword = (keyword or "").strip()
    if not keyword:
        raise ValidationError("Keyword is required")

    doc = {
        "keyword": keyword,
        "is_active": True,
        "is_exact_match": is_exact_match,
        "is_case_sensitive": is_case_sensitive,
        "trigger_count": 0,
        "last_triggered_at": None,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }

    try:
        result = await get_keyword_blacklist_collection().insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError(f"Keyword already blacklisted: {keyword}")

    doc["_id"] = result.inserted_id
    return doc


async def list_keywords() -> List[Dict[str, Any]]:
    cursor = get_keyword_blacklist_collection().find({}).sort("keyword", 1)
    return await cursor.to_list(length=None)
