"""Inbound POS webhook endpoints."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.db.session import get_session, get_session_factory
from loyalty_api.services.webhooks.ingest import SquareWebhookIngestor
from loyalty_api.services.webhooks.processor import WebhookEventProcessor
from loyalty_api.services.webhooks.square import verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


@router.post("/square", status_code=status.HTTP_200_OK)
async def square_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> dict[str, Any]:
    """Record a Square delivery and process it.

    Answers 200 once the payload is recorded or ignored so Square does not retry;
    processing failures live on the stored event.
    """

    body = await request.body()
    if settings.square_webhook_signature_key:
        notification_url = settings.square_webhook_notification_url or str(request.url)
        if not verify_signature(
            signature_key=settings.square_webhook_signature_key,
            notification_url=notification_url,
            body=body,
            signature=request.headers.get(SIGNATURE_HEADER),
        ):
            logger.warning("Rejected Square webhook with invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Square signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body")

    ingestor = SquareWebhookIngestor(db, WebhookEventProcessor(session_factory))
    result = await ingestor.ingest(payload)
    return {"ok": True, "status": result.status, "eventId": result.event_id}
