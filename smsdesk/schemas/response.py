"""
smsdesk/schemas/response.py

Shared response models and MongoDB document serialization.
"""

from datetime import datetime
from typing import Optional, Any, List

from bson import ObjectId
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error response structure.
    """
    error: str
    code: str
    details: Optional[Any] = None


class PaginatedResponse(BaseModel):
    """Page of documents with totals."""

    items: List[Any] = Field(default_factory=list)
    total: int = Field(..., description="Total matching documents")
    page: int = Field(..., description="Current page (1-based)")
    limit: int = Field(..., description="Page size")
    total_pages: int = Field(..., description="Number of pages")


def serialize(value: Any) -> Any:
    """
    Converts MongoDB documents into JSON-friendly structures.

    ObjectIds become strings and datetimes ISO strings with a Z suffix.
    """
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize(v) for v in value]
    return value


def paginate(items: List[Any], total: int, page: int, limit: int) -> dict:
    return PaginatedResponse(
        items=serialize(items),
        total=total,
        page=page,
        limit=limit,
        total_pages=(total + limit - 1) // limit if limit else 0,
    ).model_dump()
