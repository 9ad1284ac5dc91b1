"""
utils/validation_utils.py

Purpose: Input validation

- ObjectId parsing for path parameters
- Input sanitization
- Loose date parsing for contact imports
"""

import re
from typing import Optional
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId


def parse_object_id(value) -> Optional[ObjectId]:
    """
    Converts a 24-hex string (or ObjectId) to ObjectId.

    Args:
        value: Candidate identifier

    Returns:
        ObjectId if valid, None otherwise
    """
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        return None
    try:
        return ObjectId(value)
    except InvalidId:
        return None


def looks_like_object_id(value: Optional[str]) -> bool:
    """True for 24 hexadecimal characters."""
    return bool(value) and bool(re.match(r"^[0-9a-fA-F]{24}$", value))


def sanitize_input(text: Optional[str], max_length: int = 500) -> str:
    """
    Trims, collapses inner whitespace and truncates free-text input.

    Args:
        text: Raw user input
        max_length: Maximum length kept

    Returns:
        Sanitized text (empty string for None)
    """
    if not text:
        return ""

    text = re.sub(r"[ \t]+", " ", text.strip())
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", text)

    return text[:max_length]


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parses dates found in imported spreadsheets.
    Accepts: "2024-03-01", "01/03/2024", "2024-03-01T10:00:00"

    Args:
        value: Date string

    Returns:
        datetime or None if unparseable
    """
    if not value or not value.strip():
        return None

    value = value.strip()

    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%Y-%m-%dT%H:%M:%S", "%Y/%m/%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None
