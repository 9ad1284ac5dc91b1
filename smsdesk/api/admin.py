"""
smsdesk/api/admin.py

Purpose: Operational endpoints (X-Admin-Key)

- Queue statistics, manual tick, counter sync, reset
- Keyword blacklist management
"""

from typing import Optional

from fastapi import APIRouter, Depends

from smsdesk.api.deps import object_id, require_admin
from smsdesk.core.logging import get_logger
from smsdesk.schemas.response import serialize
from smsdesk.schemas.sms import CounterSyncRequest, KeywordCreateRequest
from smsdesk.services import blacklist_service
from smsdesk.services.queue_service import sms_queue_service

logger = get_logger(__name__)
router = APIRouter(prefix="/admin/sms", dependencies=[Depends(require_admin)])


@router.get("/queue/stats")
async def queue_stats():
    return serialize(await sms_queue_service.get_queue_stats())


@router.post("/queue/trigger")
async def trigger_queue():
    """Runs one queue tick now."""
    result = await sms_queue_service.process_queue()
    return {"success": True, "result": result}


@router.post("/queue/sync")
async def sync_counters(body: Optional[CounterSyncRequest] = None):
    campaign_id = object_id(body.campaign_id, "campaign") if body and body.campaign_id else None
    corrected = await sms_queue_service.synchronize_campaign_counters(campaign_id)
    return {"success": True, "corrected": corrected}


@router.post("/queue/reset")
async def reset_queue():
    sms_queue_service.reset()
    logger.warning("Queue state reset by admin")
    return {"success": True}


@router.get("/keywords")
async def list_keywords():
    return {"keywords": serialize(await blacklist_service.list_keywords())}


@router.post("/keywords", status_code=201)
async def add_keyword(body: KeywordCreateRequest):
    keyword = await blacklist_service.add_keyword(body.keyword, body.is_exact_match, body.is_case_sensitive)
    return {"keyword": serialize(keyword)}
