"""
smsdesk/schemas/campaign.py

Pydantic models for campaign endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from smsdesk.models.campaign import CampaignAction
from utils.validation_utils import looks_like_object_id


def _object_id_string(v: Optional[str]) -> Optional[str]:
    if v is not None and not looks_like_object_id(v):
        raise ValueError("Invalid ObjectId")
    return v


class CampaignCreateRequest(BaseModel):
    """Request schema for campaign creation."""

    name: str = Field(..., min_length=1, max_length=100, description="Campaign name")
    description: Optional[str] = Field(default=None, max_length=500)
    message: str = Field(..., min_length=1, description="Message text, may contain {{placeholders}}")
    contact_list_id: str = Field(..., description="Target contact list")
    sender_id: str = Field(..., min_length=1, description="Approved sender ID")
    provider_id: str = Field(..., description="SMS provider")
    country: str = Field(..., min_length=1, description="Destination country name")
    template_id: Optional[str] = Field(default=None)
    scheduled_at: Optional[datetime] = Field(default=None, description="Start time (UTC)")

    @field_validator("contact_list_id", "provider_id")
    @classmethod
    def validate_ids(cls, v: str) -> str:
        return _object_id_string(v)

    @field_validator("scheduled_at")
    @classmethod
    def strip_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Stored as naive UTC."""
        if v is not None and v.tzinfo is not None:
            return datetime.utcfromtimestamp(v.timestamp())
        return v


class CampaignUpdateRequest(BaseModel):
    """Request schema for campaign edits; omitted fields are kept."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    message: Optional[str] = Field(default=None, min_length=1)
    contact_list_id: Optional[str] = None
    sender_id: Optional[str] = None
    provider_id: Optional[str] = None
    country: Optional[str] = None
    template_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("contact_list_id", "provider_id")
    @classmethod
    def validate_ids(cls, v: Optional[str]) -> Optional[str]:
        return _object_id_string(v)

    @field_validator("scheduled_at")
    @classmethod
    def strip_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return datetime.utcfromtimestamp(v.timestamp())
        return v


class CampaignActionRequest(BaseModel):
    """Request schema for campaign actions."""

    action: str = Field(..., description="start, pause, stop, archive or restart")

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in [a.value for a in CampaignAction]:
            raise ValueError("Invalid action. Must be one of: start, pause, stop, archive, restart")
        return v
