"""Celery application setup for webhook processing and scheduled loyalty jobs."""

from __future__ import annotations

from celery import Celery

from loyalty_api.core.settings import settings


def _resolve_backend_url() -> str:
    if settings.celery_result_backend:
        return settings.celery_result_backend
    return settings.redis_url


def _resolve_broker_url() -> str:
    if settings.celery_broker_url:
        return settings.celery_broker_url
    return settings.redis_url


celery_app = Celery(
    "loyalty_api",
    broker=_resolve_broker_url(),
    backend=_resolve_backend_url(),
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    timezone="UTC",
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "redemptions-sweep-expired": {
            "task": "redemptions.sweep_expired",
            "schedule": float(settings.redemption_sweep_interval_seconds),
        },
        "reconciliation-run": {
            "task": "reconciliation.run",
            "schedule": float(settings.reconciliation_lookback_hours * 3600),
        },
    },
)

celery_app.autodiscover_tasks(["loyalty_api.celery_tasks"])

__all__ = ["celery_app"]
