"""CLI + helpers for loyalty background jobs.

External schedulers (Celery, cron) trigger the same logic as the in-process
workers through these helpers without importing FastAPI. The session factory
stays injectable for tests and queue runners.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any
from uuid import UUID

from loguru import logger

from loyalty_api.db.session import async_session
from loyalty_api.services.reconciliation.payments import PaymentReconciliationJob
from loyalty_api.services.webhooks.processor import WebhookEventProcessor
from loyalty_api.workers.redemption_expiry import RedemptionExpiryWorker, SessionFactory
from loyalty_api.workers.webhook_drain import WebhookEventDrainWorker


def _default_session_factory():
    return async_session()


async def process_webhook_event(event_id: UUID, *, session_factory: SessionFactory | None = None) -> dict[str, Any]:
    processor = WebhookEventProcessor(session_factory or _default_session_factory)
    outcome = await processor.process_event(event_id)
    return {
        "eventId": str(outcome.event_id),
        "status": outcome.status.value,
        "reason": outcome.reason,
        "points": outcome.points,
        "changed": outcome.changed,
    }


async def sweep_expired_redemptions(*, session_factory: SessionFactory | None = None) -> dict[str, int]:
    worker = RedemptionExpiryWorker(session_factory or _default_session_factory)
    summary = await worker.run_once()
    logger.info("Redemption sweep completed", **summary)
    return summary


async def drain_webhook_events(*, session_factory: SessionFactory | None = None) -> dict[str, int]:
    worker = WebhookEventDrainWorker(session_factory or _default_session_factory)
    return await worker.run_once()


async def run_reconciliation(*, session_factory: SessionFactory | None = None) -> dict[str, object]:
    job = PaymentReconciliationJob(session_factory or _default_session_factory)
    summary = await job.run()
    return summary.as_dict()


def process_webhook_event_sync(event_id: str, *, session_factory: SessionFactory | None = None) -> dict[str, Any]:
    """Synchronous helper so Celery workers can reuse the async processor."""

    return asyncio.run(process_webhook_event(UUID(event_id), session_factory=session_factory))


def sweep_expired_redemptions_sync(*, session_factory: SessionFactory | None = None) -> dict[str, int]:
    return asyncio.run(sweep_expired_redemptions(session_factory=session_factory))


def run_reconciliation_sync(*, session_factory: SessionFactory | None = None) -> dict[str, object]:
    return asyncio.run(run_reconciliation(session_factory=session_factory))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Loyalty ledger background jobs.")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process-event", help="Process a single recorded webhook event.")
    process.add_argument("--event-id", required=True, help="UUID of the webhook event row.")

    sub.add_parser("sweep", help="Cancel expired redemptions once.")
    sub.add_parser("drain", help="Process webhook events stuck in RECEIVED once.")
    sub.add_parser("reconcile", help="Compare Square payments with ledger credits (log only).")

    return parser


async def _async_main(args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "process-event":
        return await process_webhook_event(UUID(args.event_id))
    if args.command == "sweep":
        return await sweep_expired_redemptions()
    if args.command == "drain":
        return await drain_webhook_events()
    if args.command == "reconcile":
        return await run_reconciliation()
    raise ValueError(f"Unsupported command {args.command}")  # pragma: no cover - argparse guards this.


def cli() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    result = asyncio.run(_async_main(args))
    print(json.dumps(result, default=str))


if __name__ == "__main__":  # pragma: no cover
    cli()
