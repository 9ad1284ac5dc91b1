"""
smsdesk/api/webhook.py

Purpose: Delivery report webhook

- Receives delivery reports from Twilio, AWS SNS, MessageBird, SMSenvoi
  and the simulation gateway
- Accepts JSON, form-urlencoded or raw text bodies
- Verifies signatures and passes normalized reports to the delivery service
"""

import json
from typing import Any, Dict
from urllib.parse import parse_qs

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from smsdesk.core.logging import get_logger
from smsdesk.services.delivery_service import (
    normalize_delivery_report,
    process_delivery_report,
    verify_signature,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/sms/webhook")


def parse_webhook_body(raw: bytes, content_type: str) -> Dict[str, Any]:
    """
    Decodes a webhook body: JSON first, then query-string format.
    """
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return {}

    if "application/x-www-form-urlencoded" not in content_type:
        try:
            parsed = json.loads(text)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass

    return {key: values[0] for key, values in parse_qs(text, keep_blank_values=True).items()}


@router.post("/delivery")
async def delivery_webhook(request: Request):
    """
    Delivery report endpoint for all providers.

    Returns 401 on a bad signature and 400 when no message id can be found.
    """
    raw = await request.body()
    source = request.headers.get("x-webhook-source", "")

    if not verify_signature(raw, request.headers.get("x-webhook-signature")):
        logger.warning("🔒 Delivery webhook rejected: invalid signature")
        return JSONResponse(status_code=401, content={"error": "Invalid signature", "code": "INVALID_SIGNATURE"})

    body = parse_webhook_body(raw, request.headers.get("content-type", ""))
    report = normalize_delivery_report(body)

    if not report.message_id:
        logger.warning(f"Delivery webhook without message id: {body}")
        return JSONResponse(status_code=400, content={"error": "Missing messageId", "code": "BAD_REQUEST"})

    logger.info(f"📬 Delivery report received: {report.message_id} → {report.status} ({report.provider_id or source or 'internal'})")

    result = await process_delivery_report(report)
    return {"success": True, **result}


@router.get("/delivery")
async def delivery_webhook_verification():
    """Endpoint check for providers that probe with GET."""
    return {"status": "ok", "message": "Delivery webhook endpoint is active"}
