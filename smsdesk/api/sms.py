"""
smsdesk/api/sms.py

Purpose: Single sends, message history and number blacklist endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from smsdesk.api.deps import get_user_id, object_id
from smsdesk.schemas.response import paginate, serialize
from smsdesk.schemas.sms import BlacklistNumberRequest, SendSmsRequest
from smsdesk.services import blacklist_service, sms_service

router = APIRouter(prefix="/sms")


@router.post("/send")
async def send_sms(body: SendSmsRequest, user_id: str = Depends(get_user_id)):
    provider_id = object_id(body.provider_id, "provider") if body.provider_id else None
    result = await sms_service.send_single_sms(user_id, body.to, body.message, body.sender_id, provider_id)
    return {
        "success": True,
        "message": "SMS queued for sending",
        "sms": serialize(result["message"]),
        "sms_info": result["sms_info"],
    }


@router.get("/history")
async def sms_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[str] = None,
    message_type: Optional[str] = None,
    campaign_id: Optional[str] = None,
    user_id: str = Depends(get_user_id),
):
    filters = {
        "search": search,
        "status": status,
        "message_type": message_type,
        "campaign_id": campaign_id,
    }
    items, total = await sms_service.list_history(user_id, filters, page, limit)
    return paginate(items, total, page, limit)


@router.get("/blacklisted-numbers")
async def list_blacklisted_numbers(user_id: str = Depends(get_user_id)):
    numbers = await blacklist_service.list_numbers(user_id)
    return {"blacklisted_numbers": serialize(numbers)}


@router.post("/blacklisted-numbers", status_code=201)
async def add_blacklisted_number(body: BlacklistNumberRequest, user_id: str = Depends(get_user_id)):
    entry = await blacklist_service.add_number(user_id, body.phone_number, body.reason)
    return {"blacklisted_number": serialize(entry)}


@router.delete("/blacklisted-numbers")
async def remove_blacklisted_number(phone_number: str = Query(..., min_length=1), user_id: str = Depends(get_user_id)):
    await blacklist_service.remove_number(user_id, phone_number)
    return {"success": True}
