"""
smsdesk/services/contact_service.py

Purpose: Contact list and contact management

- Contact list CRUD with cascading deletes
- Single contact creation and paginated listing
- Spreadsheet-style import with column mapping
- Keeps contact_count in sync with active contacts
"""

import re
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from smsdesk.db.mongo import get_contact_lists_collection, get_contacts_collection
from smsdesk.core.exceptions import ConflictError, ResourceNotFoundError, ValidationError
from smsdesk.core.logging import get_logger, LogContext
from utils.sms_utils import format_e164, is_valid_phone
from utils.validation_utils import parse_date, sanitize_input

logger = get_logger(__name__)

CONTACT_FIELDS = ["first_name", "last_name", "address", "city", "zip_code"]


# ==============================================
# CONTACT LISTS
# ==============================================

async def create_contact_list(
    user_id: str,
    name: str,
    description: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> Dict[str, Any]:
    name = sanitize_input(name, max_length=100)
    if not name:
        raise ValidationError("Contact list name is required")

    doc = {
        "user_id": user_id,
        "name": name,
        "description": sanitize_input(description),
        "contact_count": 0,
        "is_active": True,
        "tags": tags or [],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    result = await get_contact_lists_collection().insert_one(doc)
    doc["_id"] = result.inserted_id

    logger.info(f"Contact list created: {name}", extra={"user_id": user_id})
    return doc


async def list_contact_lists(user_id: str) -> List[Dict[str, Any]]:
    cursor = get_contact_lists_collection().find(
        {"user_id": user_id, "is_active": True}
    ).sort("created_at", -1)
    return await cursor.to_list(length=None)


async def get_contact_list(list_id: ObjectId, user_id: str) -> Dict[str, Any]:
    """
    Returns a contact list owned by the user.

    Raises:
        ResourceNotFoundError: If the list does not exist for this user
    """
    contact_list = await get_contact_lists_collection().find_one(
        {"_id": list_id, "user_id": user_id}
    )
    if not contact_list:
        raise ResourceNotFoundError("Contact list not found")
    return contact_list


async def update_contact_list(list_id: ObjectId, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    allowed = {k: v for k, v in updates.items() if k in ("name", "description", "tags", "is_active") and v is not None}
    if "name" in allowed:
        allowed["name"] = sanitize_input(allowed["name"], max_length=100)
        if not allowed["name"]:
            raise ValidationError("Contact list name is required")
    allowed["updated_at"] = datetime.utcnow()

    updated = await get_contact_lists_collection().find_one_and_update(
        {"_id": list_id, "user_id": user_id},
        {"$set": allowed},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ResourceNotFoundError("Contact list not found")
    return updated


async def delete_contact_list(list_id: ObjectId, user_id: str) -> int:
    """
    Deletes a contact list and all of its contacts.

    Returns:
        Number of contacts removed
    """
    with LogContext(user_id=user_id):
        await get_contact_list(list_id, user_id)

        contacts_result = await get_contacts_collection().delete_many({"contact_list_id": list_id})
        await get_contact_lists_collection().delete_one({"_id": list_id})

        logger.info(
            f"Contact list {list_id} deleted with {contacts_result.deleted_count} contacts"
        )
        return contacts_result.deleted_count


async def refresh_contact_count(list_id: ObjectId) -> int:
    """
    Recounts active contacts and stores the value on the list.
    """
    count = await get_contacts_collection().count_documents(
        {"contact_list_id": list_id, "is_active": True}
    )
    await get_contact_lists_collection().update_one(
        {"_id": list_id},
        {"$set": {"contact_count": count, "updated_at": datetime.utcnow()}},
    )
    return count


# ==============================================
# CONTACTS
# ==============================================

async def add_contact(list_id: ObjectId, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Adds one contact to a list.

    Args:
        list_id: Contact list ID
        user_id: Tenant ID
        data: Contact fields (phone_number required)

    Returns:
        Created contact document
    """
    await get_contact_list(list_id, user_id)

    phone_number = (data.get("phone_number") or "").strip()
    if not is_valid_phone(phone_number):
        raise ValidationError("Invalid phone number format")

    doc = {
        "user_id": user_id,
        "contact_list_id": list_id,
        "phone_number": format_e164(phone_number),
        "date_of_birth": data.get("date_of_birth"),
        "custom_fields": data.get("custom_fields") or {},
        "is_active": True,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    for name in CONTACT_FIELDS:
        doc[name] = data.get(name)

    try:
        result = await get_contacts_collection().insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError("Contact already exists in this list")

    doc["_id"] = result.inserted_id
    await refresh_contact_count(list_id)
    return doc


async def list_contacts(
    list_id: ObjectId,
    user_id: str,
    page: int = 1,
    limit: int = 50,
    search: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Returns one page of active contacts and the total count.
    """
    await get_contact_list(list_id, user_id)

    query: Dict[str, Any] = {"contact_list_id": list_id, "is_active": True}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"phone_number": pattern},
            {"first_name": pattern},
            {"last_name": pattern},
        ]

    contacts = get_contacts_collection()
    total = await contacts.count_documents(query)
    cursor = contacts.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return await cursor.to_list(length=limit), total


async def delete_contact(list_id: ObjectId, contact_id: ObjectId, user_id: str) -> bool:
    await get_contact_list(list_id, user_id)

    result = await get_contacts_collection().delete_one(
        {"_id": contact_id, "contact_list_id": list_id}
    )
    if result.deleted_count == 0:
        raise ResourceNotFoundError("Contact not found")

    await refresh_contact_count(list_id)
    return True


def _cell(row: List[Any], index: Optional[int]) -> Optional[str]:
    if index is None or not isinstance(index, int) or index < 0 or index >= len(row):
        return None
    value = row[index]
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _map_row(row: List[Any], column_mapping: Dict[str, Any]) -> Dict[str, Any]:
    """
    Maps one imported row to contact fields using column indexes.

    Raises:
        ValueError: If the row has no usable phone number
    """
    phone_number = _cell(row, column_mapping.get("phone_number"))
    if not phone_number:
        raise ValueError("Phone number is required")
    if not is_valid_phone(phone_number):
        raise ValueError(f"Invalid phone number: {phone_number}")

    contact: Dict[str, Any] = {"phone_number": format_e164(phone_number)}
    for name in CONTACT_FIELDS:
        if column_mapping.get(name) is not None:
            contact[name] = _cell(row, column_mapping[name])

    if column_mapping.get("date_of_birth") is not None:
        dob = parse_date(_cell(row, column_mapping["date_of_birth"]))
        if dob:
            contact["date_of_birth"] = dob

    custom_fields = {}
    for field_name, index in (column_mapping.get("custom_fields") or {}).items():
        value = _cell(row, index)
        if value:
            custom_fields[field_name] = value
    contact["custom_fields"] = custom_fields

    return contact


async def import_contacts(
    list_id: ObjectId,
    user_id: str,
    rows: List[List[Any]],
    column_mapping: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Imports rows of cells into a contact list.

    Existing contacts (same list and phone number) are updated in place,
    everything else is inserted. Invalid rows are reported with their
    1-based row number.

    Args:
        list_id: Target contact list
        user_id: Tenant ID
        rows: List of rows, each a list of cell values
        column_mapping: {"phone_number": 0, "first_name": 1, ..., "custom_fields": {"company": 4}}

    Returns:
        {"inserted": int, "updated": int, "errors": [{"row": int, "error": str}], "contact_count": int}
    """
    with LogContext(user_id=user_id):
        await get_contact_list(list_id, user_id)

        if not rows:
            raise ValidationError("No contacts provided")
        if column_mapping.get("phone_number") is None:
            raise ValidationError("Phone number column mapping is required")

        contacts = get_contacts_collection()
        inserted = 0
        updated = 0
        errors = []

        for row_number, row in enumerate(rows, start=1):
            try:
                contact = _map_row(row, column_mapping)
            except ValueError as e:
                errors.append({"row": row_number, "error": str(e)})
                continue

            now = datetime.utcnow()
            result = await contacts.update_one(
                {"contact_list_id": list_id, "phone_number": contact["phone_number"]},
                {
                    "$set": {**contact, "is_active": True, "updated_at": now},
                    "$setOnInsert": {
                        "user_id": user_id,
                        "contact_list_id": list_id,
                        "created_at": now,
                    },
                },
                upsert=True,
            )
            if result.upserted_id is not None:
                inserted += 1
            else:
                updated += 1

        contact_count = await refresh_contact_count(list_id)

        logger.info(
            f"📥 Import finished: {inserted} inserted, {updated} updated, {len(errors)} errors"
        )

        return {
            "inserted": inserted,
            "updated": updated,
            "errors": errors,
            "contact_count": contact_count,
        }
