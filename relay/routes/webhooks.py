"""Webhook routes for ticket-thread-relay."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Request

from relay.pipeline.normalizer import URL_VERIFICATION
from relay.pipeline.pipeline import RelayPipeline
from relay.schemas.events import Platform, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

MESSAGE_DELETED = "message_deleted"


def get_pipeline(request: Request) -> RelayPipeline:
    return request.app.state.pipeline


@router.post("/webhooks/ticketing", response_model=WebhookResponse, response_model_exclude_none=True)
async def ticketing_webhook(request: Request, body: dict[str, Any] = Body(...)) -> WebhookResponse:
    """Receive a ticketing webhook.

    The body is queued and acknowledged immediately; delivery happens later.
    """
    if body.get("event") == URL_VERIFICATION:
        return WebhookResponse(status="ok")
    return await get_pipeline(request).ingest(Platform.TICKETING, body)


@router.post("/webhooks/chat", response_model=WebhookResponse, response_model_exclude_none=True)
async def chat_webhook(request: Request, body: dict[str, Any] = Body(...)) -> WebhookResponse:
    """Receive a chat gateway event.

    Message deletions only feed the recency guard and are never queued.
    """
    event = body.get("event")
    if event == URL_VERIFICATION:
        return WebhookResponse(status="ok")
    if event == MESSAGE_DELETED:
        data = body.get("data") or {}
        thread_id = data.get("threadId") or data.get("channelId")
        if not thread_id:
            return WebhookResponse(status="rejected", errors=["message_deleted payload is missing threadId"])
        await get_pipeline(request).record_deleted_message(str(thread_id), data.get("id"))
        return WebhookResponse(status="ignored")
    return await get_pipeline(request).ingest(Platform.CHAT, body)
