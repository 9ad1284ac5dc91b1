"""
smsdesk/services/billing_service.py

Purpose: SMS billing records

- Billing settings lookup (user, then global, default global created on demand)
- One pending billing record per completed campaign
- Threshold checks for single sends
"""

from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

from smsdesk.db.mongo import (
    get_billing_settings_collection,
    get_billings_collection,
    get_campaigns_collection,
    get_messages_collection,
)
from smsdesk.models.campaign import CampaignStatus
from smsdesk.models.message import MessageStatus, MessageType
from smsdesk.core.logging import get_logger, LogContext

logger = get_logger(__name__)

DEFAULT_BILLING_CURRENCY = "EUR"
UNBILLED_LOOKBACK_DAYS = 30

DEFAULT_SETTINGS = {
    "billing_frequency": "daily",
    "max_amount": 100,
    "max_messages": 1000,
    "auto_processing": True,
    "is_active": True,
}


@dataclass
class BillingCheck:
    should_create_billing: bool = False
    should_block: bool = False
    reason: Optional[str] = None
    current_usage: Dict[str, Any] = field(default_factory=dict)


async def get_settings_for_user(user_id: Optional[str]) -> Dict[str, Any]:
    """
    Returns active billing settings for a user, falling back to the
    global settings. Default global settings are created when none exist.
    """
    collection = get_billing_settings_collection()

    if user_id:
        settings = await collection.find_one({"user_id": user_id, "is_active": True})
        if settings:
            return settings

    settings = await collection.find_one({"user_id": None, "is_active": True})
    if settings:
        return settings

    settings = {
        "user_id": None,
        **DEFAULT_SETTINGS,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    result = await collection.insert_one(settings)
    settings["_id"] = result.inserted_id
    logger.info("Created default global billing settings")
    return settings


def _build_breakdown(messages: List[Dict[str, Any]], country: Optional[str]) -> List[Dict[str, Any]]:
    breakdown: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        prefix = message.get("prefix") or "unknown"
        entry = breakdown.setdefault(prefix, {
            "country": country or "Unknown",
            "prefix": prefix,
            "message_count": 0,
            "rate": message.get("cost", 0) or 0,
            "total_cost": 0.0,
        })
        entry["message_count"] += 1
        entry["total_cost"] = round(entry["total_cost"] + (message.get("cost", 0) or 0), 6)
    return list(breakdown.values())


async def process_campaign_billing(campaign_id) -> Optional[Any]:
    """
    Creates the billing record of a completed campaign.

    Runs at most once per campaign run and only when billing settings are
    active. Billed messages are the campaign's sent and delivered ones.

    Returns:
        Inserted billing id, or None when nothing was billed
    """
    campaign = await get_campaigns_collection().find_one({"_id": campaign_id})
    if not campaign or campaign.get("status") != CampaignStatus.COMPLETED.value:
        return None

    with LogContext(campaign_id=str(campaign_id), user_id=campaign.get("user_id")):
        run = campaign.get("run", 1)
        billings = get_billings_collection()
        existing = await billings.find_one(
            {"user_id": campaign["user_id"], "campaign_id": campaign_id, "campaign_run": run}
        )
        if existing:
            logger.debug(f"Campaign run {run} already billed")
            return None

        settings = await get_settings_for_user(campaign["user_id"])
        if not settings.get("is_active"):
            return None

        messages = await get_messages_collection().find({
            "campaign_id": campaign_id,
            "campaign_run": run,
            "status": {"$in": [MessageStatus.SENT.value, MessageStatus.DELIVERED.value]},
        }).to_list(length=None)
        if not messages:
            logger.info("No billable messages for campaign")
            return None

        total_cost = round(sum(m.get("cost", 0) or 0 for m in messages), 6)
        billing = {
            "user_id": campaign["user_id"],
            "campaign_id": campaign_id,
            "campaign_run": run,
            "billing_type": MessageType.CAMPAIGN.value,
            "billing_period_start": campaign.get("started_at") or campaign.get("created_at"),
            "billing_period_end": campaign.get("completed_at") or datetime.utcnow(),
            "total_messages": len(messages),
            "successful_messages": len(messages),
            "failed_messages": 0,
            "total_cost": total_cost,
            "currency": DEFAULT_BILLING_CURRENCY,
            "message_breakdown": _build_breakdown(messages, campaign.get("country")),
            "status": "pending",
            "notes": f'Campaign billing for "{campaign.get("name")}" ({len(messages)} delivered messages)',
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        }

        result = await billings.insert_one(billing)
        logger.info(f"💰 Campaign billing created: {len(messages)} messages, {total_cost} {DEFAULT_BILLING_CURRENCY}")
        return result.inserted_id


async def _last_closed_billing(user_id: str, billing_type: str) -> Optional[Dict[str, Any]]:
    cursor = get_billings_collection().find({
        "user_id": user_id,
        "billing_type": billing_type,
        "status": {"$in": ["paid", "cancelled"]},
    }).sort("billing_period_end", -1).limit(1)
    found = await cursor.to_list(length=1)
    return found[0] if found else None


async def get_single_message_usage(user_id: str) -> Dict[str, Any]:
    """
    Unbilled single-send usage since the last closed single billing.
    """
    last = await _last_closed_billing(user_id, MessageType.SINGLE.value)
    start = last["billing_period_end"] if last else datetime.utcnow() - timedelta(days=UNBILLED_LOOKBACK_DAYS)

    messages = await get_messages_collection().find({
        "user_id": user_id,
        "message_type": MessageType.SINGLE.value,
        "status": {"$in": [MessageStatus.SENT.value, MessageStatus.DELIVERED.value]},
        "created_at": {"$gte": start},
    }).to_list(length=None)

    pending = await get_billings_collection().count_documents({
        "user_id": user_id,
        "billing_type": MessageType.SINGLE.value,
        "status": "pending",
    })

    return {
        "period_start": start,
        "total_cost": sum(m.get("cost", 0) or 0 for m in messages),
        "total_messages": len(messages),
        "pending_billings": pending,
        "messages": messages,
    }


async def check_billing_before_send(user_id: str, message_count: int, total_cost: float) -> BillingCheck:
    """
    Checks billing rules for a single send.

    Blocks when manual processing is configured and single billings are
    pending; signals a threshold billing when limits would be reached.
    """
    settings = await get_settings_for_user(user_id)
    if not settings.get("is_active"):
        return BillingCheck()

    usage = await get_single_message_usage(user_id)
    summary = {k: usage[k] for k in ("total_cost", "total_messages", "pending_billings")}

    if not settings.get("auto_processing", True) and usage["pending_billings"] > 0:
        return BillingCheck(
            should_block=True,
            reason="User has pending billings that require manual approval",
            current_usage=summary,
        )

    if settings.get("billing_frequency") == "threshold":
        new_cost = usage["total_cost"] + total_cost
        new_messages = usage["total_messages"] + message_count
        if new_cost >= settings.get("max_amount", 0) or new_messages >= settings.get("max_messages", 0):
            return BillingCheck(
                should_create_billing=True,
                reason=(
                    f"Threshold reached: {new_cost:.2f}/{settings.get('max_amount')} "
                    f"or {new_messages}/{settings.get('max_messages')} messages"
                ),
                current_usage={**summary, "total_cost": new_cost, "total_messages": new_messages},
            )

    return BillingCheck(current_usage=summary)


async def process_billing_after_send(user_id: str, check: BillingCheck) -> Optional[Any]:
    """
    Creates a threshold billing record for single sends when signalled.
    """
    if not check.should_create_billing:
        return None

    usage = await get_single_message_usage(user_id)
    messages = usage["messages"]
    if not messages:
        return None

    total_cost = round(usage["total_cost"], 6)
    billing = {
        "user_id": user_id,
        "campaign_id": None,
        "billing_type": MessageType.SINGLE.value,
        "billing_period_start": usage["period_start"],
        "billing_period_end": datetime.utcnow(),
        "total_messages": len(messages),
        "successful_messages": len(messages),
        "failed_messages": 0,
        "total_cost": total_cost,
        "currency": DEFAULT_BILLING_CURRENCY,
        "message_breakdown": _build_breakdown(messages, None),
        "status": "pending",
        "notes": check.reason,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    result = await get_billings_collection().insert_one(billing)
    logger.info(f"💰 Threshold billing created for user {user_id}: {total_cost}", extra={"user_id": user_id})
    return result.inserted_id
