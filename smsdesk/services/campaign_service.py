"""
smsdesk/services/campaign_service.py

Purpose: Campaign management

- Campaign CRUD with contact counts and cost estimates
- Campaign actions (start, pause, stop, archive, restart)
- Pre-send validation and queueing
- Progress snapshots and progress streaming
"""

import asyncio
import time
from datetime import datetime
from typing import Dict, Any, List, Optional, AsyncIterator

from bson import ObjectId
from pymongo import ReturnDocument

from smsdesk.db.mongo import (
    get_campaigns_collection,
    get_contact_lists_collection,
    get_contacts_collection,
    get_messages_collection,
    get_sender_ids_collection,
)
from smsdesk.models.campaign import (
    CampaignAction,
    CampaignStatus,
    ACTION_RESULT,
    EDITABLE_STATUSES,
    FINAL_STATUSES,
    can_perform,
    new_campaign_document,
    refusal_message,
)
from smsdesk.models.message import MessageStatus
from smsdesk.services import blacklist_service, rate_service
from smsdesk.services.queue_service import sms_queue_service
from smsdesk.core.config import settings
from smsdesk.core.exceptions import (
    BadRequestError,
    InvalidStateError,
    ResourceNotFoundError,
    SMSDeskError,
    ValidationError,
)
from smsdesk.core.logging import get_logger, LogContext
from utils.validation_utils import sanitize_input

logger = get_logger(__name__)

UPDATABLE_FIELDS = (
    "name", "description", "message", "sender_id", "provider_id",
    "country", "contact_list_id", "template_id", "scheduled_at",
)


# ==============================================
# CRUD
# ==============================================

async def _get_owned_contact_list(contact_list_id: ObjectId, user_id: str) -> Dict[str, Any]:
    contact_list = await get_contact_lists_collection().find_one(
        {"_id": contact_list_id, "user_id": user_id}
    )
    if not contact_list:
        raise ResourceNotFoundError("Contact list not found")
    return contact_list


async def create_campaign(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Creates a draft campaign (scheduled when scheduled_at is given).

    Args:
        user_id: Tenant ID
        data: name, message, contact_list_id, sender_id, provider_id, country,
              optional description, template_id, scheduled_at

    Returns:
        Campaign document
    """
    with LogContext(user_id=user_id):
        name = sanitize_input(data.get("name"), max_length=100)
        if not name or not data.get("message"):
            raise ValidationError("Campaign name and message are required")

        contact_list = await _get_owned_contact_list(data["contact_list_id"], user_id)
        contact_count = contact_list.get("contact_count", 0)
        estimated_cost = await rate_service.estimate_campaign_cost(
            user_id, contact_list["_id"], data["country"]
        )

        campaign = new_campaign_document(
            user_id=user_id,
            name=name,
            message=data["message"],
            contact_list_id=contact_list["_id"],
            sender_id=data["sender_id"],
            provider_id=data["provider_id"],
            country=data["country"],
            contact_count=contact_count,
            estimated_cost=estimated_cost,
            description=data.get("description"),
            template_id=data.get("template_id"),
            scheduled_at=data.get("scheduled_at"),
        )

        result = await get_campaigns_collection().insert_one(campaign)
        campaign["_id"] = result.inserted_id

        logger.info(
            f"📣 Campaign created: {name} ({contact_count} contacts, est. {estimated_cost})",
            extra={"campaign_id": str(result.inserted_id)},
        )
        return campaign


async def list_campaigns(user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"user_id": user_id}
    if status:
        query["status"] = status
    cursor = get_campaigns_collection().find(query).sort("created_at", -1)
    return await cursor.to_list(length=None)


async def get_campaign(campaign_id: ObjectId, user_id: str) -> Dict[str, Any]:
    campaign = await get_campaigns_collection().find_one({"_id": campaign_id, "user_id": user_id})
    if not campaign:
        raise ResourceNotFoundError("Campaign not found")
    return campaign


async def update_campaign(campaign_id: ObjectId, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Edits a draft, scheduled or paused campaign.

    Contact count and cost estimate are recomputed from the (possibly new)
    contact list and country.
    """
    campaign = await get_campaign(campaign_id, user_id)
    if campaign["status"] not in [s.value for s in EDITABLE_STATUSES]:
        raise InvalidStateError(
            f"Cannot edit campaign with status '{campaign['status']}'. "
            "Only draft, scheduled, or paused campaigns can be edited."
        )

    changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS and v is not None}
    if "name" in changes:
        changes["name"] = sanitize_input(changes["name"], max_length=100)

    contact_list_id = changes.get("contact_list_id", campaign["contact_list_id"])
    country = changes.get("country", campaign["country"])
    contact_list = await _get_owned_contact_list(contact_list_id, user_id)

    changes["contact_count"] = contact_list.get("contact_count", 0)
    changes["estimated_cost"] = await rate_service.estimate_campaign_cost(user_id, contact_list_id, country)
    changes["updated_at"] = datetime.utcnow()

    if campaign["status"] in (CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value) and "scheduled_at" in changes:
        changes["status"] = CampaignStatus.SCHEDULED.value

    updated = await get_campaigns_collection().find_one_and_update(
        {"_id": campaign_id, "user_id": user_id, "status": campaign["status"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidStateError("Campaign status changed while updating")
    return updated


async def delete_campaign(campaign_id: ObjectId, user_id: str) -> Dict[str, int]:
    """
    Deletes a campaign that is not sending, with its unsent messages.
    """
    campaign = await get_campaign(campaign_id, user_id)
    if campaign["status"] == CampaignStatus.SENDING.value:
        raise InvalidStateError("Cannot delete a campaign while it is sending. Pause or stop it first.")

    result = await get_campaigns_collection().delete_one(
        {"_id": campaign_id, "status": campaign["status"]}
    )
    if not result.deleted_count:
        raise InvalidStateError("Campaign status changed while deleting")

    messages = await get_messages_collection().delete_many({
        "campaign_id": campaign_id,
        "status": {"$in": [MessageStatus.QUEUED.value, MessageStatus.PAUSED.value]},
    })

    logger.info(
        f"🗑️ Campaign deleted with {messages.deleted_count} unsent messages",
        extra={"campaign_id": str(campaign_id), "user_id": user_id},
    )
    return {"deleted_messages": messages.deleted_count}


# ==============================================
# ACTIONS
# ==============================================

async def _transition(campaign: Dict[str, Any], action: CampaignAction, changes: Dict[str, Any], inc: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """
    Moves a campaign to the action's target status if it still has the
    status it was read with.
    """
    update: Dict[str, Any] = {"$set": {
        "status": ACTION_RESULT[action].value,
        "updated_at": datetime.utcnow(),
        **changes,
    }}
    if inc:
        update["$inc"] = inc

    updated = await get_campaigns_collection().find_one_and_update(
        {"_id": campaign["_id"], "status": campaign["status"]},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidStateError("Campaign status changed concurrently, please retry")
    return updated


async def perform_action(campaign_id: ObjectId, user_id: str, action: str) -> Dict[str, Any]:
    """
    Applies a campaign action.

    The caller triggers process_campaign after a successful start.

    Args:
        campaign_id: Campaign ObjectId
        user_id: Tenant ID
        action: start | pause | stop | archive | restart

    Returns:
        Updated campaign document

    Raises:
        BadRequestError: Unknown action
        InvalidStateError: Action not allowed in the current status
    """
    try:
        action = CampaignAction(action)
    except ValueError:
        raise BadRequestError("Invalid action. Must be one of: start, pause, stop, archive, restart")

    campaign = await get_campaign(campaign_id, user_id)

    with LogContext(campaign_id=str(campaign_id), user_id=user_id):
        if not can_perform(action, campaign["status"]):
            raise InvalidStateError(refusal_message(action, campaign["status"]))

        now = datetime.utcnow()

        if action == CampaignAction.START:
            updated = await _transition(campaign, action, {"started_at": now, "error_message": None})
            resumed = await sms_queue_service.resume_campaign(campaign_id, updated.get("run"))
            if resumed:
                logger.info(f"▶️ Resumed {resumed} paused messages")

        elif action == CampaignAction.PAUSE:
            updated = await _transition(campaign, action, {})
            await sms_queue_service.pause_campaign(campaign_id, updated.get("run"))

        elif action == CampaignAction.STOP:
            updated = await _transition(campaign, action, {"completed_at": now})
            held = await sms_queue_service.hold_campaign(campaign_id, updated.get("run"))
            logger.info(f"⏹️ Campaign stopped, {held} unsent messages held")

        elif action == CampaignAction.RESTART:
            contact_list = await get_contact_lists_collection().find_one({"_id": campaign["contact_list_id"]})
            updated = await _transition(
                campaign,
                action,
                {
                    "sent_count": 0,
                    "failed_count": 0,
                    "delivered_count": 0,
                    "progress": 0,
                    "actual_cost": 0,
                    "error_message": None,
                    "started_at": None,
                    "completed_at": None,
                    "contact_count": (contact_list or {}).get("contact_count", campaign.get("contact_count", 0)),
                },
                inc={"run": 1},
            )
            retired = await sms_queue_service.retire_previous_runs(campaign_id, updated["run"])
            if retired:
                logger.info(f"🗂️ {retired} unsent messages of the previous run retired")

        else:
            updated = await _transition(campaign, action, {})

        logger.info(f"Campaign action '{action.value}' applied: {campaign['status']} → {updated['status']}")
        return updated


async def _fail_campaign(campaign_id: ObjectId, error_message: str):
    await get_campaigns_collection().update_one(
        {"_id": campaign_id},
        {"$set": {
            "status": CampaignStatus.FAILED.value,
            "error_message": error_message,
            "updated_at": datetime.utcnow(),
        }},
    )


async def process_campaign(campaign_id: ObjectId, user_id: str) -> Dict[str, Any]:
    """
    Validates a sending campaign and fans it out into queued messages.

    Blocked keywords and fan-out errors mark the campaign failed.

    Returns:
        {"campaign_id": str, "status": "queued", "fanout": {...}}
    """
    campaign = await get_campaign(campaign_id, user_id)

    with LogContext(campaign_id=str(campaign_id), user_id=user_id):
        if campaign["status"] != CampaignStatus.SENDING.value:
            raise BadRequestError("Campaign must be in sending status to process messages")

        contact_list = await get_contact_lists_collection().find_one({"_id": campaign["contact_list_id"]})
        if not contact_list:
            raise ResourceNotFoundError("Contact list not found")

        active_contacts = await get_contacts_collection().count_documents(
            {"contact_list_id": contact_list["_id"], "is_active": True}
        )
        if not active_contacts:
            await _fail_campaign(campaign_id, "Contact list has no active contacts")
            raise BadRequestError("Contact list has no active contacts")

        if not await rate_service.get_rate_deck_assignment(user_id):
            raise BadRequestError("No SMS rate deck assigned to user")

        sender = await get_sender_ids_collection().find_one({
            "user_id": user_id,
            "sender_id": campaign["sender_id"],
            "status": "approved",
        })
        if not sender:
            raise BadRequestError("Invalid or unapproved sender ID")

        check = await blacklist_service.check_message(campaign["message"])
        if check.blocked:
            await _fail_campaign(
                campaign_id,
                f"Message contains blocked keywords: {', '.join(check.matched_keywords)}",
            )
            raise BadRequestError(
                "Message contains blocked keywords",
                details={"blocked_keywords": check.matched_keywords},
            )

        try:
            fanout = await sms_queue_service.queue_campaign(campaign_id)
        except SMSDeskError as e:
            logger.error(f"Error queueing campaign: {e.message}")
            await _fail_campaign(campaign_id, e.message)
            raise
        except Exception as e:
            logger.error(f"Error queueing campaign: {e}", exc_info=True)
            await _fail_campaign(campaign_id, str(e) or "Failed to queue campaign")
            raise SMSDeskError("Failed to queue campaign for processing", code="QUEUE_ERROR")

        return {"campaign_id": str(campaign_id), "status": "queued", "fanout": fanout}


async def start_scheduled_campaign(campaign: Dict[str, Any]) -> Dict[str, Any]:
    """
    Starts a scheduled campaign whose time has come and queues it.
    """
    updated = await perform_action(campaign["_id"], campaign["user_id"], CampaignAction.START.value)
    logger.info(
        f"⏰ Scheduled campaign started: {campaign.get('name')}",
        extra={"campaign_id": str(campaign["_id"])},
    )
    await process_campaign(updated["_id"], updated["user_id"])
    return updated


async def run_campaign_in_background(campaign_id: ObjectId, user_id: str):
    """
    Background task run after a start action; failures are already
    recorded on the campaign by process_campaign.
    """
    try:
        await process_campaign(campaign_id, user_id)
    except SMSDeskError as e:
        logger.warning(
            f"Campaign processing failed: {e.message}",
            extra={"campaign_id": str(campaign_id)},
        )


# ==============================================
# PROGRESS
# ==============================================

def build_progress(campaign: Dict[str, Any]) -> Dict[str, Any]:
    contact_count = campaign.get("contact_count", 0) or 0
    sent = campaign.get("sent_count", 0) or 0
    failed = campaign.get("failed_count", 0) or 0
    delivered = campaign.get("delivered_count", 0) or 0

    return {
        "campaign_id": str(campaign["_id"]),
        "name": campaign.get("name"),
        "status": campaign.get("status"),
        "progress": {
            "percentage": campaign.get("progress", 0) or 0,
            "contact_count": contact_count,
            "sent_count": sent,
            "failed_count": failed,
            "delivered_count": delivered,
            "remaining_count": max(0, contact_count - sent - failed - delivered),
        },
        "costs": {
            "actual_cost": campaign.get("actual_cost", 0) or 0,
            "estimated_cost": campaign.get("estimated_cost", 0) or 0,
        },
        "timestamps": {
            "started_at": campaign.get("started_at"),
            "completed_at": campaign.get("completed_at"),
        },
        "last_updated": campaign.get("updated_at"),
    }


async def get_progress(campaign_id: ObjectId, user_id: str) -> Dict[str, Any]:
    campaign = await get_campaign(campaign_id, user_id)
    return build_progress(campaign)


async def iter_progress(campaign_id: ObjectId, user_id: str) -> AsyncIterator[Dict[str, Any]]:
    """
    Yields progress snapshots until the campaign reaches a final status
    or the stream time limit passes.
    """
    deadline = time.monotonic() + settings.PROGRESS_STREAM_MAX_SECONDS
    final = [s.value for s in FINAL_STATUSES]

    while True:
        snapshot = await get_progress(campaign_id, user_id)
        yield snapshot

        if snapshot["status"] in final or time.monotonic() >= deadline:
            return

        await asyncio.sleep(settings.PROGRESS_STREAM_INTERVAL_SECONDS)
