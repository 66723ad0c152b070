"""Record inbound Square events and hand them to the processor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.celery_app import celery_app
from loyalty_api.core.settings import settings
from loyalty_api.models.webhook_event import WebhookProviderEnum, record_webhook_event
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.services.webhooks.processor import ProcessingOutcome, WebhookEventProcessor
from loyalty_api.services.webhooks.square import event_external_id, event_type


@dataclass(slots=True)
class IngestResult:
    status: str
    event_id: str | None = None
    outcome: ProcessingOutcome | None = None


class SquareWebhookIngestor:
    """Dedup-inserts a Square delivery, then processes it inline or via Celery."""

    def __init__(self, db_session: AsyncSession, processor: WebhookEventProcessor) -> None:
        self._db = db_session
        self._processor = processor

    async def ingest(self, payload: Mapping[str, Any]) -> IngestResult:
        external_id = event_external_id(payload)
        if not external_id:
            logger.warning("Square webhook without event id ignored")
            return IngestResult(status="ignored")

        recorded = await record_webhook_event(
            self._db,
            provider=WebhookProviderEnum.SQUARE,
            external_id=external_id,
            event_type=event_type(payload),
            payload=dict(payload),
        )
        await self._db.commit()
        event_id = recorded.event.id

        if not recorded.created:
            get_loyalty_store().record_webhook_duplicate()
            logger.info("Duplicate Square webhook delivery", external_id=external_id, event_id=str(event_id))
            return IngestResult(status="duplicate", event_id=str(event_id))

        if self._enqueue(str(event_id)):
            return IngestResult(status="queued", event_id=str(event_id))

        outcome = await self._processor.process_event(event_id)
        return IngestResult(status=outcome.status.value, event_id=str(event_id), outcome=outcome)

    @staticmethod
    def _enqueue(event_id: str) -> bool:
        if not settings.celery_broker_url:
            return False
        try:
            celery_app.send_task("webhooks.process_event", args=[event_id], queue=settings.webhook_task_queue)
        except Exception as exc:  # noqa: BLE001 - fall back to inline processing
            logger.warning("Failed to enqueue webhook event; processing inline", event_id=event_id, error=str(exc))
            return False
        return True


__all__ = ["IngestResult", "SquareWebhookIngestor"]
