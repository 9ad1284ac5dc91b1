"""
smsdesk/services/delivery_service.py

Purpose: Delivery report handling

- Normalizes Twilio, AWS SNS, MessageBird, SMSenvoi and internal payloads
- Verifies webhook signatures
- Drops duplicate reports via persisted receipts
- Applies message status changes and reconciles campaign counters
"""

import hashlib
import hmac
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Optional

from pymongo.errors import DuplicateKeyError

from smsdesk.db.mongo import (
    get_campaigns_collection,
    get_delivery_receipts_collection,
    get_messages_collection,
)
from smsdesk.models.campaign import CampaignStatus
from smsdesk.models.message import MessageStatus, is_valid_delivery_transition
from smsdesk.services.campaign_counters import adjust_counters
from smsdesk.core.config import settings
from smsdesk.core.logging import get_logger, LogContext
from utils.time_utils import parse_compact_timestamp, parse_iso_timestamp
from utils.validation_utils import looks_like_object_id, parse_object_id

logger = get_logger(__name__)

EXPIRED = "expired"


@dataclass
class DeliveryReport:
    message_id: Optional[str]
    status: Optional[str]
    timestamp: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_id: Optional[str] = None
    recipient: Optional[str] = None


# ==============================================
# STATUS MAPS
# ==============================================

def map_twilio_status(status: str) -> str:
    status = (status or "").lower()
    if status == "delivered":
        return MessageStatus.DELIVERED.value
    if status == "expired":
        return EXPIRED
    return MessageStatus.FAILED.value


def map_aws_status(status: str) -> str:
    if (status or "").lower() == "success":
        return MessageStatus.DELIVERED.value
    return MessageStatus.FAILED.value


def map_messagebird_status(status: str) -> str:
    if (status or "").lower() == "delivered":
        return MessageStatus.DELIVERED.value
    return MessageStatus.FAILED.value


def map_smsenvoi_status(status: str) -> str:
    status = (status or "").upper()
    if status == "DLVRD":
        return MessageStatus.DELIVERED.value
    if status in ("EXPIRED", "EXPRD"):
        return EXPIRED
    return MessageStatus.FAILED.value


SMSENVOI_ERROR_MESSAGES = {
    "EXPIRED": "Message expired before delivery",
    "EXPRD": "Message expired before delivery",
    "UNDELIV": "Message undelivered",
    "FAILED": "Message delivery failed",
    "REJECTD": "Message rejected by recipient",
}


def smsenvoi_error_message(status: str) -> str:
    return SMSENVOI_ERROR_MESSAGES.get(
        (status or "").upper(), f"Delivery failed with status: {status}"
    )


def _smsenvoi_timestamp(value: Optional[str]) -> str:
    parsed = parse_compact_timestamp(value)
    return (parsed or datetime.utcnow()).isoformat() + "Z"


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


# ==============================================
# NORMALIZATION
# ==============================================

def normalize_delivery_report(body: Any) -> DeliveryReport:
    """
    Converts a provider payload into a DeliveryReport.

    Detection order: Twilio, AWS SNS, MessageBird, SMSenvoi, then the
    internal format posted by the simulation gateway.
    """
    if not isinstance(body, dict):
        return DeliveryReport(message_id=None, status=None, timestamp=_now_iso())

    # Twilio
    if body.get("MessageSid") and body.get("MessageStatus"):
        return DeliveryReport(
            message_id=body["MessageSid"],
            status=map_twilio_status(body["MessageStatus"]),
            timestamp=body.get("DateUpdated") or _now_iso(),
            error_code=body.get("ErrorCode"),
            error_message=body.get("ErrorMessage"),
            provider_message_id=body["MessageSid"],
            provider_id="twilio",
        )

    # AWS SNS
    notification = body.get("notification")
    if isinstance(notification, dict) and notification.get("messageId") and notification.get("status"):
        return DeliveryReport(
            message_id=notification["messageId"],
            status=map_aws_status(notification["status"]),
            timestamp=notification.get("timestamp") or _now_iso(),
            error_message=notification.get("reasonForFailure"),
            provider_message_id=notification["messageId"],
            provider_id="aws-sns",
        )

    # MessageBird
    if body.get("id") and body.get("status"):
        errors = body.get("errors") or [{}]
        first_error = errors[0] if isinstance(errors, list) and errors else {}
        code = first_error.get("code")
        return DeliveryReport(
            message_id=str(body["id"]),
            status=map_messagebird_status(body["status"]),
            timestamp=body.get("updatedDatetime") or _now_iso(),
            error_code=str(code) if code is not None else None,
            error_message=first_error.get("description"),
            provider_message_id=str(body["id"]),
            provider_id="messagebird",
        )

    # SMSenvoi
    if body.get("delivery_date") and body.get("status") and (body.get("order_id") or body.get("recipient")):
        status = body["status"]
        delivered = str(status).upper() == "DLVRD"
        order_id = body.get("order_id")
        return DeliveryReport(
            message_id=order_id or f"smsenvoi_{int(datetime.utcnow().timestamp() * 1000)}",
            status=map_smsenvoi_status(status),
            timestamp=_smsenvoi_timestamp(body["delivery_date"]),
            error_code=None if delivered else status,
            error_message=None if delivered else smsenvoi_error_message(status),
            provider_message_id=order_id,
            provider_id="smsenvoi",
            recipient=body.get("recipient"),
        )

    # Internal format
    return DeliveryReport(
        message_id=body.get("messageId"),
        status=body.get("status"),
        timestamp=body.get("timestamp") or _now_iso(),
        error_code=body.get("errorCode"),
        error_message=body.get("errorMessage"),
        provider_message_id=body.get("providerMessageId"),
        provider_id=body.get("providerId"),
    )


def sign_webhook_body(raw_body: bytes) -> Optional[str]:
    """Hex HMAC-SHA256 of a webhook body, or None when no WEBHOOK_SECRET is configured."""
    if not settings.WEBHOOK_SECRET:
        return None
    return hmac.new(
        settings.WEBHOOK_SECRET.encode("utf-8"),
        raw_body,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """
    Checks X-Webhook-Signature: hex HMAC-SHA256 of the raw body.

    Always valid when no WEBHOOK_SECRET is configured. Unsigned reports
    (providers sign with their own schemes) pass unless
    WEBHOOK_REQUIRE_SIGNATURE is set; a signature that is present must match.
    """
    expected = sign_webhook_body(raw_body)
    if expected is None:
        return True
    if not signature:
        return not settings.WEBHOOK_REQUIRE_SIGNATURE
    return hmac.compare_digest(expected, signature.strip().lower())


# ==============================================
# PROCESSING
# ==============================================

async def _claim_receipt(key: str, report: DeliveryReport) -> bool:
    try:
        await get_delivery_receipts_collection().insert_one({
            "key": key,
            "message_id": report.message_id,
            "status": report.status,
            "received_at": datetime.utcnow(),
        })
        return True
    except DuplicateKeyError:
        return False


async def _release_receipt(key: str):
    await get_delivery_receipts_collection().delete_one({"key": key})


async def _find_message(report: DeliveryReport) -> Optional[Dict[str, Any]]:
    candidates = [{"message_id": report.message_id}]
    if report.provider_message_id:
        candidates.append({"message_id": report.provider_message_id})
    if looks_like_object_id(report.message_id):
        candidates.append({"_id": parse_object_id(report.message_id)})

    return await get_messages_collection().find_one({"$or": candidates})


def _result(processed: bool, reason: str, message: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "processed": processed,
        "reason": reason,
        "message_id": str(message["_id"]) if message else None,
        "campaign_id": str(message["campaign_id"]) if message and message.get("campaign_id") else None,
    }


async def process_delivery_report(report: DeliveryReport) -> Dict[str, Any]:
    """
    Applies one delivery report.

    Args:
        report: Normalized report

    Returns:
        {"processed": bool, "reason": str, "message_id": str|None, "campaign_id": str|None}
    """
    key = f"{report.message_id}-{report.status}-{report.timestamp}"

    if not await _claim_receipt(key, report):
        logger.info(f"Duplicate delivery report ignored: {key}")
        return _result(False, "Duplicate delivery report")

    try:
        message = await _find_message(report)
        if not message:
            logger.warning(f"❌ Message not found for delivery report: {report.message_id}")
            await _release_receipt(key)
            return _result(False, "Message not found")

        with LogContext(message_id=str(message["_id"])):
            original_status = message["status"]
            new_status = MessageStatus.FAILED.value if report.status == EXPIRED else report.status

            if original_status == new_status:
                return _result(False, "No status change required", message)

            if not is_valid_delivery_transition(original_status, new_status):
                return _result(False, f"Invalid status transition: {original_status} → {new_status}", message)

            reported_at = parse_iso_timestamp(report.timestamp)
            update: Dict[str, Any] = {
                "status": new_status,
                "delivery_report": asdict(report),
                "updated_at": datetime.utcnow(),
            }
            if new_status == MessageStatus.DELIVERED.value:
                update["delivered_at"] = reported_at
            else:
                update["failed_at"] = reported_at
                if report.error_message:
                    update["error_message"] = report.error_message

            # Only the report that still sees the previous status applies
            applied = await get_messages_collection().update_one(
                {"_id": message["_id"], "status": original_status},
                {"$set": update},
            )
            if not applied.modified_count:
                await _release_receipt(key)
                return _result(False, "Message status changed concurrently", message)

            logger.info(f"📬 Delivery report applied: {original_status} → {new_status}")

            if message.get("campaign_id"):
                await update_campaign_delivery_stats(message, original_status, new_status)

            return _result(True, "Successfully processed", message)

    except Exception as e:
        logger.error(f"❌ Error processing delivery report for {report.message_id}: {e}", exc_info=True)
        await _release_receipt(key)
        raise


async def update_campaign_delivery_stats(message: Dict[str, Any], old_status: str, new_status: str) -> bool:
    """
    Moves one message between campaign counters after a delivery report.

    Paused campaigns are left alone; the counter sync corrects them later.
    """
    from smsdesk.services.queue_service import sms_queue_service

    campaign_id = message["campaign_id"]
    campaign = await get_campaigns_collection().find_one({"_id": campaign_id})
    if not campaign:
        logger.error(f"❌ Campaign not found: {campaign_id}")
        return False
    if campaign["status"] == CampaignStatus.PAUSED.value:
        return False

    target = "delivered_count" if new_status == MessageStatus.DELIVERED.value else "failed_count"
    changes = {target: 1}
    if old_status == MessageStatus.SENT.value:
        changes["sent_count"] = -1

    cost = (message.get("cost") or 0) if new_status == MessageStatus.DELIVERED.value else 0

    changed = await adjust_counters(
        campaign_id,
        changes,
        cost=cost,
        bound_total=True,
        update_progress=True,
    )

    await sms_queue_service.check_campaign_completion(campaign_id)
    return changed
