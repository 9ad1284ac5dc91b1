"""
smsdesk/api/contact_lists.py

Purpose: Contact list and contact endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from smsdesk.api.deps import get_user_id, object_id
from smsdesk.schemas.contact import (
    ContactCreateRequest,
    ContactImportRequest,
    ContactListCreateRequest,
    ContactListUpdateRequest,
)
from smsdesk.schemas.response import paginate, serialize
from smsdesk.services import contact_service

router = APIRouter(prefix="/sms/contact-lists")


@router.get("")
async def list_contact_lists(user_id: str = Depends(get_user_id)):
    lists = await contact_service.list_contact_lists(user_id)
    return {"contact_lists": serialize(lists)}


@router.post("", status_code=201)
async def create_contact_list(body: ContactListCreateRequest, user_id: str = Depends(get_user_id)):
    contact_list = await contact_service.create_contact_list(user_id, body.name, body.description, body.tags)
    return {"contact_list": serialize(contact_list)}


@router.get("/{list_id}")
async def get_contact_list(list_id: str, user_id: str = Depends(get_user_id)):
    contact_list = await contact_service.get_contact_list(object_id(list_id, "contact list"), user_id)
    return {"contact_list": serialize(contact_list)}


@router.put("/{list_id}")
async def update_contact_list(list_id: str, body: ContactListUpdateRequest, user_id: str = Depends(get_user_id)):
    contact_list = await contact_service.update_contact_list(
        object_id(list_id, "contact list"), user_id, body.model_dump(exclude_none=True)
    )
    return {"contact_list": serialize(contact_list)}


@router.delete("/{list_id}")
async def delete_contact_list(list_id: str, user_id: str = Depends(get_user_id)):
    deleted = await contact_service.delete_contact_list(object_id(list_id, "contact list"), user_id)
    return {"success": True, "deleted_contacts": deleted}


@router.get("/{list_id}/contacts")
async def list_contacts(
    list_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    search: Optional[str] = None,
    user_id: str = Depends(get_user_id),
):
    items, total = await contact_service.list_contacts(
        object_id(list_id, "contact list"), user_id, page, limit, search
    )
    return paginate(items, total, page, limit)


@router.post("/{list_id}/contacts", status_code=201)
async def add_contact(list_id: str, body: ContactCreateRequest, user_id: str = Depends(get_user_id)):
    contact = await contact_service.add_contact(object_id(list_id, "contact list"), user_id, body.model_dump())
    return {"contact": serialize(contact)}


@router.delete("/{list_id}/contacts/{contact_id}")
async def delete_contact(list_id: str, contact_id: str, user_id: str = Depends(get_user_id)):
    await contact_service.delete_contact(
        object_id(list_id, "contact list"), object_id(contact_id, "contact"), user_id
    )
    return {"success": True}


@router.post("/{list_id}/import")
async def import_contacts(list_id: str, body: ContactImportRequest, user_id: str = Depends(get_user_id)):
    """
    Imports spreadsheet rows using a column mapping.
    Invalid rows are reported, not fatal.
    """
    result = await contact_service.import_contacts(
        object_id(list_id, "contact list"),
        user_id,
        body.contacts,
        body.column_mapping.model_dump(),
    )
    return {"success": True, **result}
