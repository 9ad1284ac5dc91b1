"""
utils/time_utils.py

Purpose: Time helpers

- Cut-off timestamps for retry/timeout queries
- Provider timestamp parsing
- Timestamp formatting
"""

from datetime import datetime, timedelta
from typing import Optional


def seconds_ago(seconds: float) -> datetime:
    """
    Returns the UTC timestamp `seconds` before now.
    """
    return datetime.utcnow() - timedelta(seconds=seconds)


def parse_compact_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parses the YYYYMMDDHHMMSS format used by SMSenvoi delivery reports.
    """
    if not value or len(value) != 14 or not value.isdigit():
        return None
    try:
        return datetime.strptime(value, "%Y%m%d%H%M%S")
    except ValueError:
        return None


def parse_iso_timestamp(value) -> datetime:
    """
    Parses an ISO-8601 timestamp into naive UTC; falls back to now.
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if not value:
        return datetime.utcnow()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.utcnow()
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def format_timestamp(dt: Optional[datetime], format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Formats a datetime object to string.
    """
    if not dt:
        return "N/A"
    return dt.strftime(format_str)
