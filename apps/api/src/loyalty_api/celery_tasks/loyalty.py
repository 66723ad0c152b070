from __future__ import annotations

from loyalty_api.celery_app import celery_app
from loyalty_api.core.settings import settings
from loyalty_api.tasks.loyalty_jobs import (
    process_webhook_event_sync,
    run_reconciliation_sync,
    sweep_expired_redemptions_sync,
)


@celery_app.task(name="webhooks.process_event", queue=settings.webhook_task_queue)
def process_webhook_event(event_id: str) -> dict[str, object]:
    """Process one recorded webhook event; the processor never raises."""

    return process_webhook_event_sync(event_id)


@celery_app.task(name="redemptions.sweep_expired", queue=settings.celery_default_queue)
def sweep_expired_redemptions() -> dict[str, int]:
    return sweep_expired_redemptions_sync()


@celery_app.task(name="reconciliation.run", queue=settings.celery_default_queue)
def run_reconciliation() -> dict[str, object]:
    return run_reconciliation_sync()
