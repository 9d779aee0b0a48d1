"""Webhook ingress for Evolution API events."""

from __future__ import annotations

import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..conversations import schemas as convo_schemas
from ..sync.engine import ReconciliationEngine
from ..sync.push import UPDATE_EVENT, UPSERT_EVENT
from .deps import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _event_name(payload: dict, event_path: str | None) -> str:
    # "MESSAGES_UPSERT", "messages-upsert" (by-events URLs) and "messages.upsert" all occur
    raw = payload.get("event") or event_path or ""
    return str(raw).strip().lower().replace("_", ".").replace("-", ".")


def verify_api_key(payload: dict, request: Request, expected: str) -> bool:
    """Evolution echoes the instance key in the body (or an ``apikey`` header).

    Once a key is configured, events without one are rejected too.
    """

    if not expected:
        return True
    received = payload.get("apikey") or request.headers.get("apikey")
    if not received:
        return False
    return hmac.compare_digest(str(received), expected)


@router.post(
    "/api/webhooks/evolution",
    response_model=convo_schemas.WebhookAck,
    status_code=status.HTTP_202_ACCEPTED,
)
@router.post(
    "/api/webhooks/evolution/{event_path}",
    response_model=convo_schemas.WebhookAck,
    status_code=status.HTTP_202_ACCEPTED,
)
async def evolution_webhook(
    request: Request,
    event_path: str | None = None,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.WebhookAck:
    body_bytes = await request.body()
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be an object")
    if not verify_api_key(payload, request, engine.settings.provider_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid apikey")

    event = _event_name(payload, event_path)
    if event == UPSERT_EVENT:
        queued = await engine.push.ingest_upsert(payload)
        return convo_schemas.WebhookAck(event=event, queued=queued)
    if event == UPDATE_EVENT:
        await engine.push.ingest_status(payload)
        return convo_schemas.WebhookAck(event=event)
    logger.debug("Ignoring webhook event %r", event)
    return convo_schemas.WebhookAck(event=event or None)
