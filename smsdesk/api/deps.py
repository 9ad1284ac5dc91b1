"""
smsdesk/api/deps.py

Purpose: Shared request dependencies

- Tenant identity from the X-User-Id header
- Admin key check for operational endpoints
- ObjectId path parameter parsing
"""

import hmac
from typing import Optional

from bson import ObjectId
from fastapi import Header

from smsdesk.core.config import settings
from smsdesk.core.exceptions import AuthenticationError, BadRequestError
from utils.validation_utils import parse_object_id


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    Tenant ID of the caller.

    Authentication happens upstream; this service trusts the gateway header.
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing X-User-Id header")
    return x_user_id.strip()


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> bool:
    if not settings.ADMIN_API_KEY or not x_admin_key:
        raise AuthenticationError("Admin key required")
    if not hmac.compare_digest(settings.ADMIN_API_KEY, x_admin_key):
        raise AuthenticationError("Invalid admin key")
    return True


def object_id(value: Optional[str], label: str) -> ObjectId:
    """
    Parses an ID path parameter.

    Raises:
        BadRequestError: "Invalid <label> ID"
    """
    parsed = parse_object_id(value)
    if parsed is None:
        raise BadRequestError(f"Invalid {label} ID")
    return parsed
