"""
smsdesk/services/queue_service.py

Purpose: SMS sending pipeline

- Fans a campaign out over its contact list into individual messages
- Background worker claims queued messages and hands them to providers
- Retry handling with delay and timeout barriers
- Per-provider rate tracking
- Campaign completion detection and counter reconciliation
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Set

from pymongo import ReturnDocument

from smsdesk.db.mongo import (
    get_campaigns_collection,
    get_contacts_collection,
    get_messages_collection,
    get_provider_assignments_collection,
    get_providers_collection,
)
from smsdesk.models.campaign import CampaignStatus
from smsdesk.models.message import MessageStatus, MessageType, PENDING_STATUSES
from smsdesk.services import billing_service, blacklist_service, rate_service
from smsdesk.services.campaign_counters import (
    calculate_progress,
    counters_from_aggregate,
    increment_counter,
)
from smsdesk.services.providers import SendResult, get_gateway, simulation_gateway
from smsdesk.core.config import settings
from smsdesk.core.exceptions import ResourceNotFoundError, ValidationError, InvalidStateError
from smsdesk.core.logging import get_logger, LogContext
from utils.sms_utils import matches_country_prefix, render_template
from utils.time_utils import seconds_ago
from utils.validation_utils import parse_object_id

logger = get_logger(__name__)

DEFAULT_CURRENCY = "USD"
SYNC_LOOKBACK_HOURS = 24


@dataclass
class ProviderRateTracker:
    """
    Sliding counters for one provider's per second / minute / hour limits.
    """
    provider_id: str
    messages_per_second: int = 5
    messages_per_minute: int = 100
    messages_per_hour: int = 1000
    this_second: int = 0
    this_minute: int = 0
    this_hour: int = 0
    second_reset: float = field(default_factory=time.monotonic)
    minute_reset: float = field(default_factory=time.monotonic)
    hour_reset: float = field(default_factory=time.monotonic)

    def apply_limits(self, provider: Dict[str, Any]):
        limits = provider.get("rate_limit") or {}
        if provider.get("is_active"):
            self.messages_per_second = limits.get("messages_per_second", 5)
            self.messages_per_minute = limits.get("messages_per_minute", 100)
            self.messages_per_hour = limits.get("messages_per_hour", 1000)
        else:
            self.messages_per_second = 1
            self.messages_per_minute = 10
            self.messages_per_hour = 50

    def reset_windows(self, now: Optional[float] = None):
        now = now if now is not None else time.monotonic()
        if now - self.second_reset >= 1:
            self.this_second = 0
            self.second_reset = now
        if now - self.minute_reset >= 60:
            self.this_minute = 0
            self.minute_reset = now
        if now - self.hour_reset >= 3600:
            self.this_hour = 0
            self.hour_reset = now

    def available(self) -> int:
        """Messages that may still be sent in every window."""
        self.reset_windows()
        return max(0, min(
            self.messages_per_second - self.this_second,
            self.messages_per_minute - self.this_minute,
            self.messages_per_hour - self.this_hour,
        ))

    def record(self):
        self.this_second += 1
        self.this_minute += 1
        self.this_hour += 1

    def clear(self):
        now = time.monotonic()
        self.this_second = self.this_minute = self.this_hour = 0
        self.second_reset = self.minute_reset = self.hour_reset = now

    def snapshot(self) -> Dict[str, Any]:
        return {
            "messages_this_second": self.this_second,
            "messages_this_minute": self.this_minute,
            "messages_this_hour": self.this_hour,
            "rate_limit": {
                "messages_per_second": self.messages_per_second,
                "messages_per_minute": self.messages_per_minute,
                "messages_per_hour": self.messages_per_hour,
            },
        }


class SmsQueueService:
    """
    Queue-driven campaign sender.

    A message is handed to a provider only by the caller that atomically
    flips it from queued to processing.
    """

    def __init__(self):
        self._processed: Set[str] = set()
        self._campaign_locks: Set[str] = set()
        self._trackers: Dict[str, ProviderRateTracker] = {}
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ==============================================
    # FAN-OUT
    # ==============================================

    async def _validate_fanout(self, campaign: Dict[str, Any]) -> Dict[str, Any]:
        """
        Checks pricing and routing prerequisites of a campaign.

        Returns:
            {"assignment": ..., "rate": ..., "provider": ...}
        """
        user_id = campaign["user_id"]

        assignment = await rate_service.get_rate_deck_assignment(user_id)
        if not assignment:
            raise ValidationError("No SMS rate deck assigned to user")

        rate = await rate_service.get_rate_for_country(assignment["rate_deck_id"], campaign["country"])
        if not rate:
            raise ValidationError(f"No rate found for campaign country: {campaign['country']}")

        provider_assignments = await get_provider_assignments_collection().find(
            {"user_id": user_id, "is_active": True}
        ).to_list(length=None)
        if not provider_assignments:
            raise ValidationError("No SMS providers assigned to user")

        provider = await get_providers_collection().find_one({"_id": campaign.get("provider_id")})
        assigned = any(a.get("provider_id") == campaign.get("provider_id") for a in provider_assignments)
        if not assigned or not provider or not provider.get("is_active"):
            raise ValidationError(
                f"Campaign provider {campaign.get('provider_id')} is not assigned to user or is inactive"
            )

        supported = provider.get("supported_countries") or []
        if supported and campaign["country"] not in supported:
            raise ValidationError(
                f"Provider {provider.get('name')} does not support country: {campaign['country']}"
            )

        return {"assignment": assignment, "rate": rate, "provider": provider}

    async def queue_campaign(self, campaign_id) -> Dict[str, int]:
        """
        Creates one message per active contact for the campaign's current run.

        Re-running is safe: messages are keyed by (campaign, run, contact).
        Concurrent calls for the same campaign in this process are no-ops.

        Args:
            campaign_id: Campaign ObjectId

        Returns:
            {"queued": int, "failed": int, "blocked": int, "existing": int}
        """
        campaign = await get_campaigns_collection().find_one({"_id": campaign_id})
        if not campaign:
            raise ResourceNotFoundError("Campaign not found")
        if campaign["status"] != CampaignStatus.SENDING.value:
            raise InvalidStateError("Campaign must be in sending status")

        lock_key = str(campaign_id)
        if lock_key in self._campaign_locks:
            logger.warning(f"⚠️ Campaign {campaign_id} is already being processed")
            return {"queued": 0, "failed": 0, "blocked": 0, "existing": 0}

        self._campaign_locks.add(lock_key)
        try:
            with LogContext(campaign_id=lock_key, user_id=campaign["user_id"]):
                context = await self._validate_fanout(campaign)
                stats = {"queued": 0, "failed": 0, "blocked": 0, "existing": 0}

                contacts = get_contacts_collection()
                query: Dict[str, Any] = {"contact_list_id": campaign["contact_list_id"], "is_active": True}
                last_id = None

                while True:
                    page_query = dict(query)
                    if last_id is not None:
                        page_query["_id"] = {"$gt": last_id}

                    batch = await contacts.find(page_query).sort("_id", 1).limit(
                        settings.SMS_FANOUT_BATCH_SIZE
                    ).to_list(length=settings.SMS_FANOUT_BATCH_SIZE)
                    if not batch:
                        break

                    await self._create_campaign_messages(campaign, batch, context, stats)
                    last_id = batch[-1]["_id"]
                    logger.debug(f"📦 Fan-out batch done, last contact {last_id}")

                    if len(batch) < settings.SMS_FANOUT_BATCH_SIZE:
                        break

                newly_failed = stats["failed"] + stats["blocked"]
                if newly_failed:
                    await increment_counter(campaign_id, "failed_count", newly_failed)

                # Campaigns whose contacts were all rejected complete right away
                await self.check_campaign_completion(campaign_id)

                logger.info(
                    f"📤 Campaign fan-out: {stats['queued']} queued, {stats['failed']} failed, "
                    f"{stats['blocked']} blocked, {stats['existing']} already present"
                )
                return stats
        finally:
            self._campaign_locks.discard(lock_key)

    async def _create_campaign_messages(
        self,
        campaign: Dict[str, Any],
        contacts: List[Dict[str, Any]],
        context: Dict[str, Any],
        stats: Dict[str, int],
    ):
        messages = get_messages_collection()
        rate = context["rate"]
        assignment = context["assignment"]
        run = campaign.get("run", 1)

        for contact in contacts:
            now = datetime.utcnow()
            document = {
                "user_id": campaign["user_id"],
                "provider_id": campaign.get("provider_id"),
                "to": contact["phone_number"],
                "from": campaign.get("sender_id"),
                "content": render_template(campaign["message"], contact),
                "currency": DEFAULT_CURRENCY,
                "rate_deck_id": assignment["rate_deck_id"],
                "message_type": MessageType.CAMPAIGN.value,
                "retry_count": 0,
                "max_retries": settings.SMS_MAX_RETRIES,
                "created_at": now,
                "updated_at": now,
            }

            if not matches_country_prefix(contact["phone_number"], rate.get("prefix", "")):
                outcome = "failed"
                document.update({
                    "status": MessageStatus.FAILED.value,
                    "cost": 0,
                    "error_message": (
                        f"Country not supported by campaign. Campaign restricted to "
                        f"{campaign['country']} (prefix: {rate.get('prefix')})"
                    ),
                    "failed_at": now,
                })
            elif await blacklist_service.is_blacklisted(campaign["user_id"], contact["phone_number"]):
                outcome = "blocked"
                document.update({
                    "status": MessageStatus.BLOCKED.value,
                    "cost": 0,
                    "error_message": "Phone number is blacklisted",
                    "failed_at": now,
                })
            else:
                outcome = "queued"
                document.update({
                    "status": MessageStatus.QUEUED.value,
                    "cost": rate.get("rate", 0),
                    "prefix": rate.get("prefix"),
                })

            result = await messages.update_one(
                {"campaign_id": campaign["_id"], "campaign_run": run, "contact_id": contact["_id"]},
                {"$setOnInsert": document},
                upsert=True,
            )
            if result.upserted_id is not None:
                stats[outcome] += 1
            else:
                stats["existing"] += 1

    # ==============================================
    # QUEUE TICK
    # ==============================================

    async def process_queue(self) -> Dict[str, int]:
        """
        One pass of the worker: timeouts, scheduled starts, then sends.

        Overlapping calls return immediately.
        """
        if self._tick_lock.locked():
            return {"skipped": 1}

        async with self._tick_lock:
            timed_out = await self._fail_stuck_retries()
            timed_out += await self._fail_stuck_processing()
            await self._start_due_scheduled_campaigns()

            messages = await self._fetch_sendable_messages()
            if not messages:
                return {"timed_out": timed_out, "attempted": 0}

            by_provider: Dict[str, List[Dict[str, Any]]] = {}
            for message in messages:
                if not message.get("provider_id"):
                    continue
                by_provider.setdefault(str(message["provider_id"]), []).append(message)

            results = await asyncio.gather(*[
                self._process_provider_messages(provider_messages[0]["provider_id"], provider_messages)
                for provider_messages in by_provider.values()
            ])

            return {"timed_out": timed_out, "attempted": sum(results)}

    async def _fail_stuck_retries(self) -> int:
        """
        Queued retries untouched for the retry timeout are failed for good.
        """
        messages = get_messages_collection()
        stuck = await messages.find({
            "status": MessageStatus.QUEUED.value,
            "retry_count": {"$gte": 1},
            "updated_at": {"$lt": seconds_ago(settings.SMS_RETRY_TIMEOUT_SECONDS)},
        }).to_list(length=None)

        failed = 0
        minutes = max(1, settings.SMS_RETRY_TIMEOUT_SECONDS // 60)
        for message in stuck:
            result = await messages.update_one(
                {"_id": message["_id"], "status": MessageStatus.QUEUED.value},
                {"$set": {
                    "status": MessageStatus.FAILED.value,
                    "retry_count": message.get("max_retries", settings.SMS_MAX_RETRIES),
                    "failed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                    "error_message": (
                        f"{message.get('error_message') or 'Unknown error'} "
                        f"(Retry timeout - stuck for >{minutes}min)"
                    ),
                }},
            )
            if result.modified_count and message.get("campaign_id"):
                await increment_counter(message["campaign_id"], "failed_count")
            failed += result.modified_count

        if failed:
            logger.warning(f"⏰ Failed {failed} messages stuck in retry")
        return failed

    async def _fail_stuck_processing(self) -> int:
        """
        Messages left in processing past the timeout are failed, never re-sent.
        """
        messages = get_messages_collection()
        stuck = await messages.find({
            "status": MessageStatus.PROCESSING.value,
            "updated_at": {"$lt": seconds_ago(settings.SMS_PROCESSING_TIMEOUT_SECONDS)},
        }).to_list(length=None)

        failed = 0
        campaign_ids = set()
        for message in stuck:
            result = await messages.update_one(
                {"_id": message["_id"], "status": MessageStatus.PROCESSING.value},
                {"$set": {
                    "status": MessageStatus.FAILED.value,
                    "failed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                    "error_message": "Processing timeout",
                }},
            )
            if result.modified_count and message.get("campaign_id"):
                await increment_counter(message["campaign_id"], "failed_count")
                campaign_ids.add(message["campaign_id"])
            self._processed.discard(str(message["_id"]))
            failed += result.modified_count

        for campaign_id in campaign_ids:
            await self.check_campaign_completion(campaign_id)

        if failed:
            logger.warning(f"⏰ Failed {failed} messages stuck in processing")
        return failed

    async def _start_due_scheduled_campaigns(self):
        due = await get_campaigns_collection().find({
            "status": CampaignStatus.SCHEDULED.value,
            "scheduled_at": {"$lte": datetime.utcnow()},
        }).to_list(length=None)
        if not due:
            return

        from smsdesk.services import campaign_service

        for campaign in due:
            try:
                await campaign_service.start_scheduled_campaign(campaign)
            except Exception as e:
                logger.error(
                    f"Failed to start scheduled campaign {campaign['_id']}: {e}",
                    extra={"campaign_id": str(campaign["_id"])},
                    exc_info=True,
                )

    async def _fetch_sendable_messages(self) -> List[Dict[str, Any]]:
        active = await get_campaigns_collection().find(
            {"status": CampaignStatus.SENDING.value}, {"_id": 1, "run": 1}
        ).to_list(length=None)

        # Only the current run of a sending campaign is sendable
        owners = [{"campaign_id": c["_id"], "campaign_run": c.get("run", 1)} for c in active]
        owners.append({"campaign_id": None})

        query = {
            "status": MessageStatus.QUEUED.value,
            "retry_count": {"$lt": settings.SMS_MAX_RETRIES},
            "$and": [
                {"$or": owners},
                {"$or": [
                    {"retry_count": 0},
                    {"updated_at": {"$lt": seconds_ago(settings.SMS_RETRY_DELAY_SECONDS)}},
                ]},
            ],
        }

        queued = await get_messages_collection().find(query).sort("created_at", 1).limit(
            settings.SMS_QUEUE_BATCH_SIZE
        ).to_list(length=settings.SMS_QUEUE_BATCH_SIZE)

        return [m for m in queued if str(m["_id"]) not in self._processed]

    def _get_tracker(self, provider: Dict[str, Any]) -> ProviderRateTracker:
        key = str(provider["_id"])
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = ProviderRateTracker(provider_id=key)
            self._trackers[key] = tracker
        tracker.apply_limits(provider)
        return tracker

    async def _process_provider_messages(self, provider_id, messages: List[Dict[str, Any]]) -> int:
        """
        Sends one provider's share of the batch within its rate limits.

        Returns:
            Number of messages handed to the provider
        """
        provider = await get_providers_collection().find_one({"_id": provider_id})
        if not provider:
            logger.error(f"❌ Provider {provider_id} not found")
            await self._mark_messages_failed(messages, "Provider not found")
            return 0

        tracker = self._get_tracker(provider)

        if not provider.get("is_active"):
            logger.warning(f"⚠️ Provider {provider.get('name')} is inactive, marking messages as failed")
            await self._mark_messages_failed(messages, "Provider is inactive")
            return 0

        max_to_process = min(len(messages), tracker.available())
        if max_to_process <= 0:
            logger.debug(f"Rate limit reached for provider {provider.get('name')}")
            return 0

        gateway = get_gateway(provider.get("provider"))
        collection = get_messages_collection()
        attempted = 0

        for index, message in enumerate(messages[:max_to_process]):
            message_id = str(message["_id"])
            if message_id in self._processed:
                continue

            self._processed.add(message_id)
            try:
                claimed = await collection.find_one_and_update(
                    {"_id": message["_id"], "status": MessageStatus.QUEUED.value},
                    {
                        "$set": {"status": MessageStatus.PROCESSING.value, "updated_at": datetime.utcnow()},
                        "$inc": {"retry_count": 1},
                    },
                    return_document=ReturnDocument.AFTER,
                )
                if not claimed:
                    logger.debug(f"Message {message_id} claimed elsewhere")
                    continue

                with LogContext(message_id=message_id, provider_id=str(provider_id)):
                    result = await gateway.send(provider, claimed)
                    await self._record_send_result(claimed, result)

                tracker.record()
                attempted += 1

                if settings.SMS_QUEUE_SEND_DELAY_SECONDS and index < max_to_process - 1:
                    await asyncio.sleep(settings.SMS_QUEUE_SEND_DELAY_SECONDS)

            except Exception as e:
                logger.error(f"❌ Error processing message {message_id}: {e}", exc_info=True)
                self._processed.discard(message_id)
                await self._fail_if_exhausted(message["_id"], str(e))

        campaign_ids = {m["campaign_id"] for m in messages if m.get("campaign_id")}
        for campaign_id in campaign_ids:
            await self.check_campaign_completion(campaign_id)

        return attempted

    async def _record_send_result(self, message: Dict[str, Any], result: SendResult):
        now = datetime.utcnow()
        retry_count = message.get("retry_count", 1)
        max_retries = message.get("max_retries", settings.SMS_MAX_RETRIES)

        if result.success:
            status = MessageStatus.SENT.value
        elif result.retryable and retry_count < max_retries:
            status = MessageStatus.QUEUED.value
        else:
            status = MessageStatus.FAILED.value

        update: Dict[str, Any] = {
            "status": status,
            "provider_response": {
                "success": result.success,
                "message_id": result.message_id,
                "error": result.error,
                "retryable": result.retryable,
                "raw": result.raw,
            },
            "error_message": result.error,
            "updated_at": now,
        }
        if result.success:
            update["sent_at"] = now
            if result.message_id:
                update["message_id"] = result.message_id
        if status == MessageStatus.FAILED.value:
            update["failed_at"] = now

        # A delivery report may already have moved the message on
        applied = await get_messages_collection().update_one(
            {"_id": message["_id"], "status": MessageStatus.PROCESSING.value},
            {"$set": update},
        )
        if not applied.modified_count:
            if result.success and result.message_id:
                await get_messages_collection().update_one(
                    {"_id": message["_id"], "message_id": {"$exists": False}},
                    {"$set": {"message_id": result.message_id, "sent_at": now}},
                )
            return

        if status == MessageStatus.QUEUED.value:
            # Retry is picked up by a later tick
            self._processed.discard(str(message["_id"]))
            logger.info(f"🔄 Message will be retried ({retry_count}/{max_retries}): {result.error}")
        elif status == MessageStatus.FAILED.value:
            reason = "permanent failure" if not result.retryable else "max retries exceeded"
            logger.warning(f"❌ Message failed ({reason}): {result.error}")

        if message.get("campaign_id"):
            if status == MessageStatus.SENT.value:
                await increment_counter(message["campaign_id"], "sent_count")
            elif status == MessageStatus.FAILED.value:
                await increment_counter(message["campaign_id"], "failed_count")

    async def _fail_if_exhausted(self, message_id, error: str):
        """
        After an unexpected error, fails the message once retries are used up.
        Otherwise it stays where it is and the processing timeout resolves it.
        """
        messages = get_messages_collection()
        current = await messages.find_one({"_id": message_id})
        if not current:
            return
        if current.get("retry_count", 0) < current.get("max_retries", settings.SMS_MAX_RETRIES):
            return

        result = await messages.update_one(
            {"_id": message_id, "status": {"$in": [MessageStatus.QUEUED.value, MessageStatus.PROCESSING.value]}},
            {"$set": {
                "status": MessageStatus.FAILED.value,
                "error_message": error,
                "failed_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            }},
        )
        if result.modified_count and current.get("campaign_id"):
            await increment_counter(current["campaign_id"], "failed_count")

    async def _mark_messages_failed(self, messages: List[Dict[str, Any]], error: str):
        collection = get_messages_collection()
        campaign_ids = set()
        for message in messages:
            result = await collection.update_one(
                {"_id": message["_id"], "status": MessageStatus.QUEUED.value},
                {"$set": {
                    "status": MessageStatus.FAILED.value,
                    "error_message": error,
                    "failed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                }},
            )
            if result.modified_count and message.get("campaign_id"):
                await increment_counter(message["campaign_id"], "failed_count")
                campaign_ids.add(message["campaign_id"])

        for campaign_id in campaign_ids:
            await self.check_campaign_completion(campaign_id)

    # ==============================================
    # COMPLETION AND RECONCILIATION
    # ==============================================

    async def aggregate_message_statuses(self, campaign: Dict[str, Any]) -> Dict[str, Any]:
        """
        Counts the current run's messages per status.

        Returns:
            {"counts": {status: n}, "delivered_cost": float, "total": int,
             "processed": int, "pending": int}
        """
        match: Dict[str, Any] = {"campaign_id": campaign["_id"]}
        if campaign.get("run") is not None:
            match["campaign_run"] = campaign["run"]

        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "cost": {"$sum": "$cost"}}},
        ]
        rows = await get_messages_collection().aggregate(pipeline).to_list(length=None)

        counts = {status.value: 0 for status in MessageStatus}
        delivered_cost = 0.0
        for row in rows:
            counts[row["_id"]] = row["count"]
            if row["_id"] == MessageStatus.DELIVERED.value:
                delivered_cost = row.get("cost") or 0.0

        total = sum(counts.values())
        pending = sum(counts[s] for s in PENDING_STATUSES)
        return {
            "counts": counts,
            "delivered_cost": delivered_cost,
            "total": total,
            "processed": total - pending,
            "pending": pending,
        }

    async def check_campaign_completion(self, campaign_id) -> bool:
        """
        Completes a sending campaign once none of its messages are pending.

        Returns:
            True if the campaign was completed by this call
        """
        campaigns = get_campaigns_collection()
        campaign = await campaigns.find_one({"_id": campaign_id})
        if not campaign or campaign["status"] == CampaignStatus.COMPLETED.value:
            return False

        summary = await self.aggregate_message_statuses(campaign)
        contact_count = campaign.get("contact_count", 0)

        if summary["pending"] == 0 and summary["total"] > 0:
            if campaign["status"] != CampaignStatus.SENDING.value:
                return False

            now = datetime.utcnow()
            result = await campaigns.update_one(
                {"_id": campaign_id, "status": CampaignStatus.SENDING.value},
                {"$set": {
                    "status": CampaignStatus.COMPLETED.value,
                    "completed_at": now,
                    "updated_at": now,
                    "progress": 100,
                    "actual_cost": round(summary["delivered_cost"], 6),
                    **counters_from_aggregate(summary["counts"], contact_count),
                }},
            )
            if not result.modified_count:
                return False

            logger.info(
                f"🎉 Campaign {campaign.get('name')} completed",
                extra={"campaign_id": str(campaign_id)},
            )

            try:
                await billing_service.process_campaign_billing(campaign_id)
            except Exception as e:
                logger.error(f"❌ Failed to process campaign billing for {campaign_id}: {e}", exc_info=True)
            return True

        progress = calculate_progress(summary["processed"], contact_count)
        if campaign.get("progress") != progress:
            await campaigns.update_one(
                {"_id": campaign_id},
                {"$set": {"progress": progress, "updated_at": datetime.utcnow()}},
            )
        return False

    async def synchronize_campaign_counters(self, campaign_id=None) -> int:
        """
        Recomputes counters from messages and fixes drift.

        Args:
            campaign_id: One campaign, or None for recent sending/completed ones

        Returns:
            Number of campaigns corrected
        """
        campaigns = get_campaigns_collection()
        if campaign_id is not None:
            targets = await campaigns.find({"_id": campaign_id}).to_list(length=None)
        else:
            targets = await campaigns.find({
                "status": {"$in": [CampaignStatus.SENDING.value, CampaignStatus.COMPLETED.value]},
                "updated_at": {"$gte": datetime.utcnow() - timedelta(hours=SYNC_LOOKBACK_HOURS)},
            }).to_list(length=None)

        corrected = 0
        for campaign in targets:
            try:
                if await self._sync_single_campaign(campaign):
                    corrected += 1
            except Exception as e:
                logger.error(f"❌ Error syncing campaign {campaign['_id']}: {e}", exc_info=True)

        if corrected:
            logger.info(f"🔧 Synchronized counters of {corrected} campaigns")
        return corrected

    async def _sync_single_campaign(self, campaign: Dict[str, Any]) -> bool:
        summary = await self.aggregate_message_statuses(campaign)
        contact_count = campaign.get("contact_count", 0)

        correct = counters_from_aggregate(summary["counts"], contact_count)
        correct["progress"] = calculate_progress(summary["processed"], summary["total"])
        completes = (
            summary["pending"] == 0
            and summary["total"] > 0
            and campaign["status"] == CampaignStatus.SENDING.value
        )

        drift = any(campaign.get(k) != v for k, v in correct.items())
        if not drift and not completes:
            return False

        logger.warning(
            "Counter drift detected",
            extra={"campaign_id": str(campaign["_id"])},
        )

        update = {**correct, "updated_at": datetime.utcnow()}
        match: Dict[str, Any] = {"_id": campaign["_id"], "status": campaign["status"]}
        if completes:
            update.update({
                "status": CampaignStatus.COMPLETED.value,
                "completed_at": datetime.utcnow(),
                "actual_cost": round(summary["delivered_cost"], 6),
            })

        result = await get_campaigns_collection().update_one(match, {"$set": update})
        if completes and result.modified_count:
            try:
                await billing_service.process_campaign_billing(campaign["_id"])
            except Exception as e:
                logger.error(f"❌ Failed to process campaign billing for {campaign['_id']}: {e}", exc_info=True)
        return bool(result.modified_count)

    # ==============================================
    # CAMPAIGN CONTROL
    # ==============================================

    async def pause_campaign(self, campaign_id, run: Optional[int] = None) -> int:
        """Moves the campaign's queued messages to paused."""
        return await self._move_messages(campaign_id, run, MessageStatus.QUEUED, MessageStatus.PAUSED)

    async def resume_campaign(self, campaign_id, run: Optional[int] = None) -> int:
        """Moves the campaign's paused messages back to queued."""
        return await self._move_messages(campaign_id, run, MessageStatus.PAUSED, MessageStatus.QUEUED)

    async def hold_campaign(self, campaign_id, run: Optional[int] = None) -> int:
        """Stopped campaigns keep their unsent messages paused; they are never sent."""
        return await self.pause_campaign(campaign_id, run)

    async def retire_previous_runs(self, campaign_id, current_run: int) -> int:
        """Fails queued or held messages left over from earlier runs of a restarted campaign."""
        now = datetime.utcnow()
        result = await get_messages_collection().update_many(
            {
                "campaign_id": campaign_id,
                "campaign_run": {"$lt": current_run},
                "status": {"$in": [MessageStatus.QUEUED.value, MessageStatus.PAUSED.value]},
            },
            {"$set": {
                "status": MessageStatus.FAILED.value,
                "error_message": "Superseded by restart",
                "failed_at": now,
                "updated_at": now,
            }},
        )
        if result.modified_count:
            logger.info(f"🗂️ Retired {result.modified_count} unsent messages from earlier runs of {campaign_id}")
        return result.modified_count

    async def _move_messages(self, campaign_id, run: Optional[int], source: MessageStatus, target: MessageStatus) -> int:
        query: Dict[str, Any] = {"campaign_id": campaign_id, "status": source.value}
        if run is not None:
            query["campaign_run"] = run
        result = await get_messages_collection().update_many(
            query,
            {"$set": {"status": target.value, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count

    # ==============================================
    # STATS AND LIFECYCLE
    # ==============================================

    async def get_queue_stats(self) -> Dict[str, Any]:
        messages = get_messages_collection()
        queued, processing, sent, failed = await asyncio.gather(
            messages.count_documents({"status": MessageStatus.QUEUED.value}),
            messages.count_documents({"status": MessageStatus.PROCESSING.value}),
            messages.count_documents({"status": MessageStatus.SENT.value}),
            messages.count_documents({"status": MessageStatus.FAILED.value}),
        )

        provider_stats = []
        for provider_id, tracker in self._trackers.items():
            provider = await get_providers_collection().find_one({"_id": parse_object_id(provider_id) or provider_id})
            if provider:
                provider_stats.append({
                    "provider_id": provider_id,
                    "name": provider.get("name"),
                    **tracker.snapshot(),
                })

        return {
            "queued": queued,
            "processing": processing,
            "sent": sent,
            "failed": failed,
            "provider_stats": provider_stats,
            "worker_running": self.is_running,
            "tracked_messages": len(self._processed),
        }

    def reset(self):
        """Clears in-process tracking, locks and rate counters."""
        self._processed.clear()
        self._campaign_locks.clear()
        for tracker in self._trackers.values():
            tracker.clear()
        simulation_gateway.reset()
        logger.info("🔄 SMS queue service reset")

    def clear_processed_tracking(self):
        self._processed.clear()

    async def cleanup_processed_tracking(self) -> int:
        """
        Forgets processed ids whose messages are no longer queued or processing.
        """
        active = await get_messages_collection().find(
            {"status": {"$in": [MessageStatus.QUEUED.value, MessageStatus.PROCESSING.value]}},
            {"_id": 1},
        ).to_list(length=None)
        active_ids = {str(m["_id"]) for m in active}

        stale = self._processed - active_ids
        self._processed -= stale
        simulation_gateway.forget_sent(active_ids)
        if stale:
            logger.debug(f"🧹 Cleaned {len(stale)} processed message ids")
        return len(stale)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.is_running:
            logger.warning("SMS queue worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("✅ SMS queue worker started")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._processed.clear()
        self._campaign_locks.clear()
        logger.info("SMS queue worker stopped")

    async def _run_loop(self):
        last_cleanup = last_sync = time.monotonic()

        while self._running:
            try:
                await self.process_queue()
            except Exception as e:
                logger.error(f"❌ Error processing SMS queue: {e}", exc_info=True)

            now = time.monotonic()
            try:
                if now - last_cleanup >= settings.SMS_TRACKING_CLEANUP_INTERVAL_SECONDS:
                    last_cleanup = now
                    await self.cleanup_processed_tracking()
                if now - last_sync >= settings.SMS_COUNTER_SYNC_INTERVAL_SECONDS:
                    last_sync = now
                    await self.synchronize_campaign_counters()
            except Exception as e:
                logger.error(f"❌ Queue maintenance failed: {e}", exc_info=True)

            await asyncio.sleep(settings.SMS_QUEUE_INTERVAL_SECONDS)


# Singleton instance
sms_queue_service = SmsQueueService()
