"""Inbound purchase webhooks.

WHAT:
    - POST /api/webhook/apex: Apex payment gateway events
    - POST /api/webhook/chat: Telegram updates (or {"text": ...}) carrying
      sale notifications from the payments channel

WHY:
    Senders retry on anything but 2xx, so once a request is authentic and
    well-formed it is always acknowledged with 200: internal failures are
    logged and sent to Sentry for follow-up instead of triggering retry
    storms. The sale is recorded before answering; the conversion dispatch
    runs after the response (BackgroundTasks, or the ARQ queue when
    USE_ARQ_QUEUE is set).

REFERENCES:
    - utmrelay/services/event_ingestion.py
    - utmrelay/services/sale_pipeline.py
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from utmrelay.deps import get_pipeline, get_relay_context
from utmrelay.exceptions import ValidationError
from utmrelay.schemas import ApexWebhookPayload, WebhookAck
from utmrelay.security import admin_key_matches, verify_webhook_signature
from utmrelay.services.event_ingestion import SaleEvent, event_from_webhook, parse_sale_message
from utmrelay.telemetry import capture_exception
from utmrelay.workers.arq_enqueue import enqueue_dispatch_job
from utmrelay.workers.background import run_guarded

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["Webhooks"])


# =============================================================================
# HELPERS
# =============================================================================

async def _read_json(request: Request) -> Tuple[bytes, Any]:
    body = await request.body()
    try:
        return body, json.loads(body or b"null")
    except ValueError:
        logger.warning("[WEBHOOK] Body is not valid JSON")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")


async def schedule_dispatch(context, pipeline, background_tasks: BackgroundTasks, sale_code: str) -> str:
    """Hand the dispatch to ARQ when enabled, else to an in-process background task."""
    if context.settings.USE_ARQ_QUEUE:
        try:
            await enqueue_dispatch_job(context, sale_code)
            return "queued"
        except Exception as e:
            logger.exception(f"[WEBHOOK] ARQ enqueue failed for {sale_code}, dispatching in-process: {e}")
            capture_exception(e, extra={"operation": "enqueue_dispatch_job", "sale_code": sale_code})

    background_tasks.add_task(run_guarded, "dispatch_sale", pipeline.dispatch_sale, sale_code)
    return "scheduled"


async def record_and_schedule(
    event: SaleEvent,
    context,
    pipeline,
    background_tasks: BackgroundTasks,
) -> WebhookAck:
    try:
        outcome = await asyncio.to_thread(pipeline.record_sale, event)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Failed to record sale {event.sale_code}: {e}")
        capture_exception(e, extra={"sale_code": event.sale_code, "source": event.source})
        return WebhookAck(success=False, message="Received; processing failed", sale_code=event.sale_code)

    if outcome.is_duplicate:
        return WebhookAck(
            success=True,
            message="Already processed",
            sale_code=outcome.sale_code,
            outcome=outcome.outcome,
            click_id=outcome.click_id,
        )

    dispatch = await schedule_dispatch(context, pipeline, background_tasks, outcome.sale_code)
    return WebhookAck(
        success=True,
        message=f"Sale {outcome.outcome}; dispatch {dispatch}",
        sale_code=outcome.sale_code,
        outcome=outcome.outcome,
        click_id=outcome.click_id,
        attribution_step=outcome.attribution_step,
    )


def _telegram_message(update: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """(text, chat_id) from a Telegram update or a plain {"text": ...} body."""
    message = (
        update.get("message")
        or update.get("channel_post")
        or update.get("edited_message")
        or update.get("edited_channel_post")
    )
    if isinstance(message, dict):
        chat = message.get("chat") or {}
        chat_id = chat.get("id")
        return message.get("text") or message.get("caption"), str(chat_id) if chat_id is not None else None
    chat_id = update.get("chat_id")
    return update.get("text"), str(chat_id) if chat_id is not None else None


# =============================================================================
# APEX GATEWAY
# =============================================================================

@router.get("/apex", response_model=WebhookAck)
def apex_webhook_check():
    """Endpoint check used when the webhook URL is registered."""
    return WebhookAck(success=True, message="Webhook endpoint ready")


@router.post("/apex", response_model=WebhookAck)
async def apex_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    context=Depends(get_relay_context),
    pipeline=Depends(get_pipeline),
):
    """Handle an Apex gateway event.

    RESPONSES:
        401 - WEBHOOK_SECRET is set and the signature does not match
        400 - malformed body, or no sale_code / transaction_id
        200 - everything else (ignored events and internal failures included)
    """
    body, data = await _read_json(request)

    secret = context.settings.WEBHOOK_SECRET
    if secret and not verify_webhook_signature(secret, body, request.headers.get("X-Webhook-Signature")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = ApexWebhookPayload.model_validate(data)
    except PydanticValidationError as e:
        logger.warning(f"[WEBHOOK] Invalid Apex payload: {e.error_count()} error(s)")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    if not (payload.transaction.sale_code or payload.transaction.transaction_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing transaction.sale_code")

    try:
        event = event_from_webhook(payload)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if event is None:
        return WebhookAck(success=True, message=f"Event {payload.event} ignored")

    logger.info(f"[WEBHOOK] Apex {payload.event} for sale {event.sale_code}")
    return await record_and_schedule(event, context, pipeline, background_tasks)


# =============================================================================
# CHAT NOTIFICATIONS
# =============================================================================

@router.post("/chat", response_model=WebhookAck)
async def chat_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    context=Depends(get_relay_context),
    pipeline=Depends(get_pipeline),
):
    """Handle a chat update; messages that are not sale notifications are acknowledged and ignored."""
    expected = context.settings.TELEGRAM_SECRET_TOKEN
    if expected and not admin_key_matches(expected, request.headers.get("X-Telegram-Bot-Api-Secret-Token")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid secret token")

    _, data = await _read_json(request)
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected a JSON object")

    text, chat_id = _telegram_message(data)
    event = parse_sale_message(text, chat_id=chat_id)
    if event is None:
        return WebhookAck(success=True, message="Not a sale notification")

    return await record_and_schedule(event, context, pipeline, background_tasks)
