"""Worker that finishes webhook events left RECEIVED by an interrupted ingestion."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import utcnow
from loyalty_api.core.settings import settings
from loyalty_api.models.webhook_event import WebhookEventStatus, fetch_stale_received_events
from loyalty_api.services.webhooks.processor import WebhookEventProcessor

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class WebhookEventDrainWorker:
    """Processes events still RECEIVED after the grace period. FAILED events stay failed."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        processor: WebhookEventProcessor | None = None,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        grace_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor or WebhookEventProcessor(session_factory)
        self.interval_seconds = interval_seconds or settings.webhook_drain_interval_seconds
        self._batch_size = batch_size or settings.webhook_drain_batch_size
        self._grace = timedelta(
            seconds=settings.webhook_drain_grace_seconds if grace_seconds is None else grace_seconds
        )
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Webhook drain worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Webhook drain worker stopped")

    async def run_once(self, *, now: datetime | None = None) -> Dict[str, int]:
        cutoff = (now or utcnow()) - self._grace
        session = await self._ensure_session()
        async with session as managed_session:
            events = await fetch_stale_received_events(
                managed_session,
                received_before=cutoff,
                limit=self._batch_size,
            )
            event_ids = [event.id for event in events]
            await managed_session.rollback()

        summary = {"processed": 0, "failed": 0, "skipped": 0}
        for event_id in event_ids:
            outcome = await self._processor.process_event(event_id)
            if not outcome.changed:
                summary["skipped"] += 1
            elif outcome.status is WebhookEventStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["processed"] += 1

        if event_ids:
            logger.info("Drained stale webhook events", **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop keeps running
                logger.exception("Webhook drain iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session
