"""
smsdesk/schemas/sms.py

Pydantic models for single sends, blacklist and admin endpoints.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from utils.validation_utils import looks_like_object_id


class SendSmsRequest(BaseModel):
    """Request schema for a single SMS."""

    to: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, description="Message text")
    sender_id: Optional[str] = Field(default=None, description="Approved sender ID")
    provider_id: Optional[str] = Field(default=None, description="Specific provider, else highest priority")

    @field_validator("provider_id")
    @classmethod
    def validate_provider_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not looks_like_object_id(v):
            raise ValueError("Invalid provider ID")
        return v


class BlacklistNumberRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=200)


class KeywordCreateRequest(BaseModel):
    """Request schema for keyword blacklist entries."""

    keyword: str = Field(..., min_length=1, max_length=100)
    is_exact_match: bool = Field(default=False, description="Match whole words only")
    is_case_sensitive: bool = Field(default=False)

    @field_validator("keyword")
    @classmethod
    def clean_keyword(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Keyword is required")
        return v


class CounterSyncRequest(BaseModel):
    campaign_id: Optional[str] = Field(default=None, description="One campaign, or all recent ones")

    @field_validator("campaign_id")
    @classmethod
    def validate_campaign_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not looks_like_object_id(v):
            raise ValueError("Invalid campaign ID")
        return v
