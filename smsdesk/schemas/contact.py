"""
smsdesk/schemas/contact.py

Pydantic models for contact list and contact endpoints.
"""

from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from utils.sms_utils import is_valid_phone


class ContactListCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    tags: List[str] = Field(default_factory=list)


class ContactListUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None


class ContactCreateRequest(BaseModel):
    """Request schema for adding a single contact."""

    phone_number: str = Field(..., description="Phone number, E.164 preferred")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    date_of_birth: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_phone(v):
            raise ValueError("Invalid phone number format")
        return v


class ColumnMapping(BaseModel):
    """Column index (0-based) of each contact field in the imported rows."""

    phone_number: Optional[int] = Field(default=None, ge=0)
    first_name: Optional[int] = Field(default=None, ge=0)
    last_name: Optional[int] = Field(default=None, ge=0)
    address: Optional[int] = Field(default=None, ge=0)
    city: Optional[int] = Field(default=None, ge=0)
    zip_code: Optional[int] = Field(default=None, ge=0)
    date_of_birth: Optional[int] = Field(default=None, ge=0)
    custom_fields: Dict[str, int] = Field(default_factory=dict)


class ContactImportRequest(BaseModel):
    """Request schema for spreadsheet imports."""

    contacts: List[List[Any]] = Field(default_factory=list, description="Rows of cell values")
    column_mapping: ColumnMapping
