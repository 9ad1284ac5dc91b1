"""
smsdesk/models/campaign.py

Purpose: Campaign document model

- Enum of campaign statuses
- Allowed actions per status (start, pause, stop, archive, restart)
- Document factory for new campaigns
"""

from enum import Enum
from datetime import datetime
from typing import Dict, List, Optional, Any


class CampaignStatus(str, Enum):
    """
    Lifecycle of an SMS campaign.
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    ARCHIVED = "archived"
    STOPPED = "stopped"


class CampaignAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    STOP = "stop"
    ARCHIVE = "archive"
    RESTART = "restart"


# Statuses from which each action is permitted
ACTION_ALLOWED_FROM: Dict[CampaignAction, List[CampaignStatus]] = {
    CampaignAction.START: [
        CampaignStatus.DRAFT,
        CampaignStatus.PAUSED,
        CampaignStatus.SCHEDULED,
    ],
    CampaignAction.PAUSE: [
        CampaignStatus.SENDING,
    ],
    CampaignAction.STOP: [
        CampaignStatus.SENDING,
        CampaignStatus.PAUSED,
    ],
    CampaignAction.ARCHIVE: [
        CampaignStatus.COMPLETED,
        CampaignStatus.FAILED,
        CampaignStatus.STOPPED,
    ],
    CampaignAction.RESTART: [
        CampaignStatus.COMPLETED,
        CampaignStatus.STOPPED,
        CampaignStatus.FAILED,
    ],
}

ACTION_RESULT: Dict[CampaignAction, CampaignStatus] = {
    CampaignAction.START: CampaignStatus.SENDING,
    CampaignAction.PAUSE: CampaignStatus.PAUSED,
    CampaignAction.STOP: CampaignStatus.STOPPED,
    CampaignAction.ARCHIVE: CampaignStatus.ARCHIVED,
    CampaignAction.RESTART: CampaignStatus.DRAFT,
}

ACTION_REFUSAL_HINTS: Dict[CampaignAction, str] = {
    CampaignAction.START: "Campaign must be in draft, paused, or scheduled status.",
    CampaignAction.PAUSE: "Campaign must be in sending status.",
    CampaignAction.STOP: "Campaign must be in sending or paused status.",
    CampaignAction.ARCHIVE: "Campaign must be completed, failed, or stopped.",
    CampaignAction.RESTART: "Campaign must be completed, stopped, or failed.",
}

# Campaign fields that may be edited
EDITABLE_STATUSES = [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.PAUSED]

# Progress streams close on these
FINAL_STATUSES = [CampaignStatus.COMPLETED, CampaignStatus.STOPPED, CampaignStatus.FAILED]


def can_perform(action: CampaignAction, status: str) -> bool:
    """
    Checks whether a campaign in `status` accepts `action`.

    Args:
        action: Requested action
        status: Current campaign status

    Returns:
        True if allowed
    """
    return status in [s.value for s in ACTION_ALLOWED_FROM.get(action, [])]


def refusal_message(action: CampaignAction, status: str) -> str:
    """
    Message shown when an action is not allowed,
    e.g. "Cannot start campaign with status 'sending'. Campaign must be ..."
    """
    return f"Cannot {action.value} campaign with status '{status}'. {ACTION_REFUSAL_HINTS[action]}"


def new_campaign_document(
    user_id: str,
    name: str,
    message: str,
    contact_list_id,
    sender_id: str,
    provider_id,
    country: str,
    contact_count: int,
    estimated_cost: float,
    description: Optional[str] = None,
    template_id: Optional[str] = None,
    scheduled_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Builds a new campaign document with zeroed counters.
    """
    now = datetime.utcnow()
    return {
        "user_id": user_id,
        "name": name,
        "description": description,
        "status": (CampaignStatus.SCHEDULED if scheduled_at else CampaignStatus.DRAFT).value,
        "contact_list_id": contact_list_id,
        "template_id": template_id,
        "message": message,
        "sender_id": sender_id,
        "provider_id": provider_id,
        "country": country,
        "scheduled_at": scheduled_at,
        "started_at": None,
        "completed_at": None,
        "contact_count": contact_count,
        "sent_count": 0,
        "failed_count": 0,
        "delivered_count": 0,
        "estimated_cost": estimated_cost,
        "actual_cost": 0,
        "progress": 0,
        "error_message": None,
        "run": 1,
        "created_at": now,
        "updated_at": now,
    }
