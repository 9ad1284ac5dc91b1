"""
smsdesk/models/message.py

Purpose: SMS message document model

- Enum of message statuses and types
- Status groups used by the queue and completion checks
- Delivery-report transition rules
"""

from enum import Enum
from typing import Dict, List


class MessageStatus(str, Enum):
    """
    Lifecycle of a single SMS.

    queued -> processing -> sent -> delivered | failed | undelivered
    queued <-> paused; failed/blocked may be set directly at fan-out.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERED = "undelivered"
    BLOCKED = "blocked"
    PAUSED = "paused"


class MessageType(str, Enum):
    SINGLE = "single"
    CAMPAIGN = "campaign"


# Messages still waiting for an outcome
PENDING_STATUSES: List[str] = [
    MessageStatus.QUEUED.value,
    MessageStatus.PROCESSING.value,
    MessageStatus.PAUSED.value,
]

# Statuses that count towards a campaign's failed_count
FAILED_STATUSES: List[str] = [
    MessageStatus.FAILED.value,
    MessageStatus.UNDELIVERED.value,
    MessageStatus.BLOCKED.value,
]

TERMINAL_STATUSES: List[str] = [
    MessageStatus.DELIVERED.value,
    MessageStatus.FAILED.value,
    MessageStatus.UNDELIVERED.value,
    MessageStatus.BLOCKED.value,
]

# Transitions a delivery report may apply
DELIVERY_TRANSITIONS: Dict[str, List[str]] = {
    MessageStatus.SENT.value: [
        MessageStatus.DELIVERED.value,
        MessageStatus.FAILED.value,
        MessageStatus.UNDELIVERED.value,
    ],
    MessageStatus.PROCESSING.value: [
        MessageStatus.DELIVERED.value,
        MessageStatus.FAILED.value,
        MessageStatus.UNDELIVERED.value,
    ],
    MessageStatus.QUEUED.value: [
        MessageStatus.DELIVERED.value,
        MessageStatus.FAILED.value,
        MessageStatus.UNDELIVERED.value,
    ],
}


def is_valid_delivery_transition(from_status: str, to_status: str) -> bool:
    """
    Checks if a delivery report may move a message between statuses.

    Args:
        from_status: Current message status
        to_status: Status reported by the provider

    Returns:
        True if the transition is allowed
    """
    if from_status in TERMINAL_STATUSES:
        return False
    return to_status in DELIVERY_TRANSITIONS.get(from_status, [])
