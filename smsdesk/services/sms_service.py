"""
smsdesk/services/sms_service.py

Purpose: Single SMS sends and message history

- Validates recipient, sender ID, keywords and number blacklist
- Picks the provider and prices the message by longest prefix
- Stores a queued single message for the queue worker
- Paginated message history
"""

import re
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from smsdesk.db.mongo import (
    get_campaigns_collection,
    get_messages_collection,
    get_provider_assignments_collection,
    get_providers_collection,
    get_sender_ids_collection,
)
from smsdesk.models.message import MessageStatus, MessageType
from smsdesk.services import billing_service, blacklist_service, rate_service
from smsdesk.core.config import settings
from smsdesk.core.exceptions import ValidationError
from smsdesk.core.logging import get_logger, LogContext
from utils.sms_utils import calculate_sms, format_e164, is_valid_phone
from utils.validation_utils import parse_object_id

logger = get_logger(__name__)

DEFAULT_CURRENCY = "USD"


async def _select_provider(user_id: str, provider_id=None) -> Dict[str, Any]:
    """
    Returns the requested provider, or the highest-priority active one
    assigned to the user.
    """
    assignments = await get_provider_assignments_collection().find(
        {"user_id": user_id, "is_active": True}
    ).sort("priority", -1).to_list(length=None)
    if not assignments:
        raise ValidationError("No SMS gateways assigned to user")

    providers = get_providers_collection()

    if provider_id is not None:
        if not any(a.get("provider_id") == provider_id for a in assignments):
            raise ValidationError("Requested gateway not assigned to user or inactive")
        provider = await providers.find_one({"_id": provider_id})
        if not provider or not provider.get("is_active"):
            raise ValidationError("Selected gateway is inactive")
        return provider

    for assignment in assignments:
        provider = await providers.find_one({"_id": assignment.get("provider_id"), "is_active": True})
        if provider:
            return provider

    raise ValidationError("No available SMS gateways (limits exceeded or inactive)")


async def send_single_sms(
    user_id: str,
    to: str,
    message: str,
    sender_id: Optional[str] = None,
    provider_id=None,
) -> Dict[str, Any]:
    """
    Queues one SMS outside of any campaign.

    Blacklisted recipients are recorded as a blocked message and refused.

    Args:
        user_id: Tenant ID
        to: Recipient number
        message: Text to send
        sender_id: Approved sender ID value
        provider_id: Optional provider ObjectId

    Returns:
        {"message": <document>, "sms_info": <segment info>}

    Raises:
        ValidationError: Any validation failure
    """
    with LogContext(user_id=user_id):
        if not to or not message:
            raise ValidationError("Phone number and message are required")
        if not is_valid_phone(to):
            raise ValidationError("Invalid phone number format")

        recipient = format_e164(to)

        sender = None
        if sender_id:
            sender = await get_sender_ids_collection().find_one({
                "user_id": user_id,
                "sender_id": sender_id,
                "status": "approved",
            })
            if not sender:
                raise ValidationError("Invalid or unapproved sender ID")

        check = await blacklist_service.check_message(message)
        if check.blocked:
            raise ValidationError(
                "Message contains blocked keywords",
                details={"blocked_keywords": check.matched_keywords},
            )

        assignment = await rate_service.get_rate_deck_assignment(user_id)
        if not assignment:
            raise ValidationError("No SMS rate deck assigned to user")

        rate = await rate_service.find_rate_for_number(assignment["rate_deck_id"], recipient)
        if not rate:
            raise ValidationError(f"No rate found for destination number: {recipient}")

        provider = await _select_provider(user_id, provider_id)

        now = datetime.utcnow()
        document = {
            "user_id": user_id,
            "provider_id": provider["_id"],
            "to": recipient,
            "from": sender["sender_id"] if sender else provider.get("default_sender_id"),
            "content": message,
            "cost": rate.get("rate", 0),
            "currency": DEFAULT_CURRENCY,
            "rate_deck_id": assignment["rate_deck_id"],
            "prefix": rate.get("prefix"),
            "message_type": MessageType.SINGLE.value,
            "retry_count": 0,
            "max_retries": settings.SMS_MAX_RETRIES,
            "created_at": now,
            "updated_at": now,
        }

        messages = get_messages_collection()

        if await blacklist_service.is_blacklisted(user_id, recipient):
            document.update({
                "status": MessageStatus.BLOCKED.value,
                "cost": 0,
                "error_message": "Phone number is blacklisted",
                "failed_at": now,
            })
            await messages.insert_one(document)
            logger.warning(f"🚫 Blocked SMS to blacklisted number {recipient}")
            raise ValidationError("Phone number is blacklisted and cannot receive SMS messages")

        billing_check = await billing_service.check_billing_before_send(user_id, 1, document["cost"])
        if billing_check.should_block:
            raise ValidationError(f"SMS blocked: {billing_check.reason}")

        document["status"] = MessageStatus.QUEUED.value
        result = await messages.insert_one(document)
        document["_id"] = result.inserted_id

        try:
            await billing_service.process_billing_after_send(user_id, billing_check)
        except Exception as e:
            logger.error(f"❌ Threshold billing failed: {e}", exc_info=True)

        logger.info(
            f"📨 Single SMS queued to {recipient} via {provider.get('name')}",
            extra={"message_id": str(result.inserted_id)},
        )
        return {"message": document, "sms_info": calculate_sms(message)}


async def list_history(
    user_id: str,
    filters: Optional[Dict[str, Any]] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Returns a page of the user's messages, newest first.

    Filters: search (recipient or content), status, message_type, campaign_id.
    Each message gets provider_name and campaign_name.
    """
    filters = filters or {}
    query: Dict[str, Any] = {"user_id": user_id}

    if filters.get("search"):
        pattern = {"$regex": re.escape(filters["search"]), "$options": "i"}
        query["$or"] = [{"to": pattern}, {"content": pattern}]
    if filters.get("status"):
        query["status"] = filters["status"]
    if filters.get("message_type"):
        query["message_type"] = filters["message_type"]
    if filters.get("campaign_id"):
        query["campaign_id"] = parse_object_id(filters["campaign_id"])

    page = max(1, page)
    limit = max(1, min(limit, 100))

    collection = get_messages_collection()
    total = await collection.count_documents(query)
    items = await collection.find(query).sort("created_at", -1).skip(
        (page - 1) * limit
    ).limit(limit).to_list(length=limit)

    provider_ids = list({m["provider_id"] for m in items if m.get("provider_id")})
    campaign_ids = list({m["campaign_id"] for m in items if m.get("campaign_id")})

    providers = {
        p["_id"]: p for p in await get_providers_collection().find(
            {"_id": {"$in": provider_ids}}
        ).to_list(length=None)
    } if provider_ids else {}
    campaigns = {
        c["_id"]: c for c in await get_campaigns_collection().find(
            {"_id": {"$in": campaign_ids}}, {"name": 1}
        ).to_list(length=None)
    } if campaign_ids else {}

    for item in items:
        provider = providers.get(item.get("provider_id")) or {}
        campaign = campaigns.get(item.get("campaign_id")) or {}
        item["provider_name"] = provider.get("display_name") or provider.get("name") or "SMS Provider"
        item["campaign_name"] = campaign.get("name")
        item.setdefault("message_type", MessageType.SINGLE.value)

    return items, total
