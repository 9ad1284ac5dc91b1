"""
utils/sms_utils.py

Purpose: SMS message helpers

- Segment/encoding calculation (GSM 7-bit vs Unicode)
- Phone number normalization and country prefix checks
- Campaign template variable rendering
"""

import re
from typing import Dict, Any, Optional

# GSM 7-bit character set
GSM_7BIT_CHARS = (
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ\x1bÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM characters (these count as 2 characters)
GSM_EXTENDED_CHARS = "^{}\\[~]|€"

# SMS limits
GSM_SINGLE_SMS_LIMIT = 160
GSM_MULTI_SMS_LIMIT = 153  # 7 characters reserved for concatenation header
UNICODE_SINGLE_SMS_LIMIT = 70
UNICODE_MULTI_SMS_LIMIT = 67

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{6,14}$")
PHONE_NOISE_PATTERN = re.compile(r"[\s\-\(\)]")


def calculate_sms(message: Optional[str]) -> Dict[str, Any]:
    """
    Calculates SMS segment count and encoding for a message.

    Extended GSM characters count twice; any character outside the GSM
    alphabet switches the whole message to Unicode (UCS-2) limits.

    Args:
        message: Message text

    Returns:
        {
            "character_count": int,
            "encoding": "GSM_7BIT" | "UNICODE",
            "sms_count": int,
            "characters_per_sms": int,
            "remaining_chars": int,
            "has_special_chars": bool,
            "special_chars_count": int
        }
    """
    if not message:
        return {
            "character_count": 0,
            "encoding": "GSM_7BIT",
            "sms_count": 0,
            "characters_per_sms": GSM_SINGLE_SMS_LIMIT,
            "remaining_chars": GSM_SINGLE_SMS_LIMIT,
            "has_special_chars": False,
            "special_chars_count": 0,
        }

    gsm_length = 0
    special_chars_count = 0
    requires_unicode = False

    for char in message:
        if char in GSM_7BIT_CHARS:
            gsm_length += 1
        elif char in GSM_EXTENDED_CHARS:
            gsm_length += 2
            special_chars_count += 1
        else:
            requires_unicode = True
            gsm_length += 1
            special_chars_count += 1

    if requires_unicode:
        encoding = "UNICODE"
        length = len(message)
        single_limit, multi_limit = UNICODE_SINGLE_SMS_LIMIT, UNICODE_MULTI_SMS_LIMIT
    else:
        encoding = "GSM_7BIT"
        length = gsm_length
        single_limit, multi_limit = GSM_SINGLE_SMS_LIMIT, GSM_MULTI_SMS_LIMIT

    if length <= single_limit:
        sms_count = 1
        per_sms = single_limit
    else:
        sms_count = -(-length // multi_limit)
        per_sms = multi_limit

    used_in_last = length % per_sms or per_sms

    return {
        "character_count": length,
        "encoding": encoding,
        "sms_count": sms_count,
        "characters_per_sms": per_sms,
        "remaining_chars": per_sms - used_in_last,
        "has_special_chars": special_chars_count > 0,
        "special_chars_count": special_chars_count,
    }


def normalize_phone(phone_number: str) -> str:
    """
    Removes spaces, dashes and parentheses from a phone number.
    """
    return PHONE_NOISE_PATTERN.sub("", phone_number or "")


def format_e164(phone_number: str) -> str:
    """
    Normalizes a number and adds a leading '+' unless it already has
    an international prefix ('+' or '00').
    """
    cleaned = normalize_phone(phone_number.strip())
    if not cleaned.startswith("+") and not cleaned.startswith("00"):
        cleaned = "+" + cleaned
    return cleaned


def is_valid_phone(phone_number: str) -> bool:
    """
    Basic international format check (7 to 15 digits, optional '+').
    """
    if not phone_number:
        return False
    return bool(PHONE_PATTERN.match(normalize_phone(phone_number)))


def strip_international_prefix(phone_number: str) -> str:
    """
    Drops a leading '+' and any leading zeros ('0033...' -> '33...').
    """
    return re.sub(r"^\+?0*", "", normalize_phone(phone_number))


def matches_country_prefix(phone_number: str, prefix: str) -> bool:
    """
    Checks that a number belongs to the rate prefix of a campaign country.

    Example:
        matches_country_prefix("+33 6 12 34 56 78", "+33") -> True
    """
    if not phone_number or not prefix:
        return False
    return strip_international_prefix(phone_number).startswith(prefix.lstrip("+"))


def render_template(message: str, contact: Dict[str, Any]) -> str:
    """
    Replaces campaign template variables with contact data.

    Supported: {{firstName}}, {{lastName}}, {{fullName}}, {{phoneNumber}},
    {{email}}, {{company}}, {{customField1}}..{{customField3}}.
    Unknown contact values render as empty strings.
    """
    custom = contact.get("custom_fields") or {}
    first_name = contact.get("first_name") or ""
    last_name = contact.get("last_name") or ""

    variables = {
        "firstName": first_name,
        "lastName": last_name,
        "fullName": f"{first_name} {last_name}".strip(),
        "phoneNumber": contact.get("phone_number") or "",
        "email": contact.get("email") or custom.get("email") or "",
        "company": contact.get("company") or custom.get("company") or "",
        "customField1": custom.get("customField1") or "",
        "customField2": custom.get("customField2") or "",
        "customField3": custom.get("customField3") or "",
    }

    rendered = message
    for name, value in variables.items():
        rendered = rendered.replace("{{" + name + "}}", str(value))

    return rendered
