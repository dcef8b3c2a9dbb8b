"""
Facebook webhook endpoints.

GET is the subscription handshake; POST carries page events. Facebook
retries anything but a 200, so POST acknowledges even when processing fails.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response

from api.deps import get_queue, get_realtime_hub
from config.settings import get_settings
from core.realtime import RealtimeHub
from core.webhooks import WebhookProcessor
from job_queue.message_queue import MessageQueue

logger = structlog.get_logger()

router = APIRouter()


@router.get("/facebook")
async def verify_facebook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    if not mode or not token:
        return Response(status_code=400)
    if mode == "subscribe" and token == get_settings().facebook.webhook_verify_token:
        logger.info("facebook_webhook_verified")
        return PlainTextResponse(challenge or "")
    logger.warning("facebook_webhook_verification_failed", mode=mode)
    return Response(status_code=403)


@router.post("/facebook")
async def receive_facebook(
    request: Request,
    queue: MessageQueue = Depends(get_queue),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    try:
        body: Any = await request.json()
        await WebhookProcessor(queue=queue, hub=hub).handle(body)
    except Exception as e:
        logger.error("facebook_webhook_failed", error=str(e), exc_info=True)
    return PlainTextResponse("EVENT_RECEIVED")
