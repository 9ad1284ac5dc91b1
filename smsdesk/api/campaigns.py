"""
smsdesk/api/campaigns.py

Purpose: Campaign endpoints

- Campaign CRUD
- Actions (start triggers processing in the background)
- Manual processing trigger
- Progress as JSON or Server-Sent Events
"""

import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import StreamingResponse

from smsdesk.api.deps import get_user_id, object_id
from smsdesk.core.logging import get_logger
from smsdesk.models.campaign import CampaignAction
from smsdesk.schemas.campaign import CampaignActionRequest, CampaignCreateRequest, CampaignUpdateRequest
from smsdesk.schemas.response import serialize
from smsdesk.services import campaign_service

logger = get_logger(__name__)
router = APIRouter(prefix="/sms/campaigns")


@router.get("")
async def list_campaigns(status: Optional[str] = None, user_id: str = Depends(get_user_id)):
    campaigns = await campaign_service.list_campaigns(user_id, status)
    return {"campaigns": serialize(campaigns)}


@router.post("", status_code=201)
async def create_campaign(body: CampaignCreateRequest, user_id: str = Depends(get_user_id)):
    data = body.model_dump()
    data["contact_list_id"] = object_id(body.contact_list_id, "contact list")
    data["provider_id"] = object_id(body.provider_id, "provider")

    campaign = await campaign_service.create_campaign(user_id, data)
    return {"campaign": serialize(campaign)}


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, user_id: str = Depends(get_user_id)):
    campaign = await campaign_service.get_campaign(object_id(campaign_id, "campaign"), user_id)
    return {"campaign": serialize(campaign)}


@router.put("/{campaign_id}")
async def update_campaign(campaign_id: str, body: CampaignUpdateRequest, user_id: str = Depends(get_user_id)):
    updates = body.model_dump(exclude_none=True)
    if body.contact_list_id:
        updates["contact_list_id"] = object_id(body.contact_list_id, "contact list")
    if body.provider_id:
        updates["provider_id"] = object_id(body.provider_id, "provider")

    campaign = await campaign_service.update_campaign(object_id(campaign_id, "campaign"), user_id, updates)
    return {"campaign": serialize(campaign)}


@router.delete("/{campaign_id}")
async def delete_campaign(campaign_id: str, user_id: str = Depends(get_user_id)):
    result = await campaign_service.delete_campaign(object_id(campaign_id, "campaign"), user_id)
    return {"success": True, **result}


@router.post("/{campaign_id}/action")
async def campaign_action(
    campaign_id: str,
    body: CampaignActionRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
):
    """
    Applies start, pause, stop, archive or restart.

    A successful start queues the campaign's messages after the response.
    """
    cid = object_id(campaign_id, "campaign")
    campaign = await campaign_service.perform_action(cid, user_id, body.action)

    if body.action == CampaignAction.START.value:
        background_tasks.add_task(campaign_service.run_campaign_in_background, cid, user_id)
        logger.info("▶️ Campaign start accepted, processing in background", extra={"campaign_id": campaign_id})

    return {
        "success": True,
        "message": f"Campaign {body.action} successful",
        "campaign": serialize(campaign),
    }


@router.post("/{campaign_id}/process")
async def process_campaign(campaign_id: str, user_id: str = Depends(get_user_id)):
    result = await campaign_service.process_campaign(object_id(campaign_id, "campaign"), user_id)
    return {"success": True, "message": "Campaign queued for processing", **result}


@router.get("/{campaign_id}/progress")
async def campaign_progress(campaign_id: str, request: Request, user_id: str = Depends(get_user_id)):
    """
    Progress snapshot, or a Server-Sent Events stream when the client
    accepts text/event-stream.
    """
    cid = object_id(campaign_id, "campaign")

    if "text/event-stream" not in request.headers.get("accept", ""):
        return serialize(await campaign_service.get_progress(cid, user_id))

    # Fail fast with a normal error response for unknown campaigns
    await campaign_service.get_campaign(cid, user_id)

    async def event_stream():
        async for snapshot in campaign_service.iter_progress(cid, user_id):
            if await request.is_disconnected():
                break
            yield f"data: {json.dumps(serialize(snapshot))}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
