"""
smsdesk/services/campaign_counters.py

Purpose: Bounded campaign counter updates

- sent_count / delivered_count / failed_count never leave [0, contact_count]
- Optimistic compare-and-set on the current counter values, retried on conflict
- Shared by the queue worker and the delivery webhook
"""

from datetime import datetime
from typing import Dict, Any, Optional

from smsdesk.db.mongo import get_campaigns_collection
from smsdesk.core.logging import get_logger

logger = get_logger(__name__)

COUNTER_FIELDS = ("sent_count", "delivered_count", "failed_count")

MAX_CAS_ATTEMPTS = 10


def calculate_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(processed / total * 100))


def _bounded_values(
    current: Dict[str, int],
    changes: Dict[str, int],
    contact_count: int,
    bound_total: bool,
) -> Dict[str, int]:
    new_values = {
        field: max(0, min(contact_count, current[field] + changes.get(field, 0)))
        for field in COUNTER_FIELDS
    }

    if bound_total:
        # Trim increases until sent + delivered + failed fits contact_count
        excess = sum(new_values.values()) - max(contact_count, sum(current.values()))
        for field in COUNTER_FIELDS:
            if excess <= 0:
                break
            increase = new_values[field] - current[field]
            if increase > 0:
                cut = min(excess, increase)
                new_values[field] -= cut
                excess -= cut

    return new_values


async def adjust_counters(
    campaign_id,
    changes: Dict[str, int],
    cost: float = 0.0,
    bound_total: bool = False,
    update_progress: bool = False,
) -> bool:
    """
    Applies counter deltas to a campaign with compare-and-set.

    Args:
        campaign_id: Campaign ObjectId
        changes: Deltas per counter, e.g. {"sent_count": -1, "delivered_count": 1}
        cost: Added to actual_cost when at least one counter changes
        bound_total: Also keep sent + delivered + failed <= contact_count
        update_progress: Recompute progress from the new counters

    Returns:
        True if the campaign document was changed
    """
    campaigns = get_campaigns_collection()

    for _ in range(MAX_CAS_ATTEMPTS):
        campaign = await campaigns.find_one({"_id": campaign_id})
        if not campaign:
            return False

        contact_count = campaign.get("contact_count", 0) or 0
        current = {field: campaign.get(field, 0) or 0 for field in COUNTER_FIELDS}
        new_values = _bounded_values(current, changes, contact_count, bound_total)

        if new_values == current:
            return False

        match: Dict[str, Any] = {"_id": campaign_id}
        for field in COUNTER_FIELDS:
            if field in campaign:
                match[field] = campaign[field]
            else:
                match[field] = {"$exists": False}

        update: Dict[str, Any] = {"$set": {**new_values, "updated_at": datetime.utcnow()}}
        if update_progress:
            update["$set"]["progress"] = calculate_progress(sum(new_values.values()), contact_count)
        if cost:
            update["$inc"] = {"actual_cost": cost}

        result = await campaigns.update_one(match, update)
        if result.matched_count:
            return True

    logger.warning(
        f"Counter update for campaign {campaign_id} gave up after {MAX_CAS_ATTEMPTS} conflicts",
        extra={"campaign_id": str(campaign_id)},
    )
    return False


async def increment_counter(campaign_id, counter: str, amount: int = 1) -> bool:
    """
    Increments one counter, capped at contact_count.
    """
    return await adjust_counters(campaign_id, {counter: amount})


def counters_from_aggregate(counts: Dict[str, int], contact_count: Optional[int]) -> Dict[str, int]:
    """
    Campaign counters derived from message status counts, capped at contact_count.
    """
    cap = contact_count if contact_count is not None else float("inf")
    failed = counts.get("failed", 0) + counts.get("undelivered", 0) + counts.get("blocked", 0)
    return {
        "sent_count": int(min(cap, counts.get("sent", 0))),
        "delivered_count": int(min(cap, counts.get("delivered", 0))),
        "failed_count": int(min(cap, failed)),
    }
