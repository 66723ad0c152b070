from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from loyalty_api.core.settings import settings
from loyalty_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import RedemptionExpiryWorker, WebhookEventDrainWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "loyalty-api"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    expiry_worker = RedemptionExpiryWorker(
        session_factory=_session_factory,
        interval_seconds=settings.redemption_sweep_interval_seconds,
    )
    drain_worker = WebhookEventDrainWorker(
        session_factory=_session_factory,
        interval_seconds=settings.webhook_drain_interval_seconds,
        batch_size=settings.webhook_drain_batch_size,
        grace_seconds=settings.webhook_drain_grace_seconds,
    )
    app.state.redemption_expiry_worker = expiry_worker
    app.state.webhook_drain_worker = drain_worker

    expiry_enabled = settings.redemption_sweep_worker_enabled
    if expiry_enabled:
        expiry_worker.start()
    else:
        logger.info(
            "Redemption expiry worker disabled",
            reason="redemption_sweep_worker_enabled is false",
        )

    drain_enabled = settings.webhook_drain_worker_enabled
    if drain_enabled:
        drain_worker.start()
    else:
        logger.info(
            "Webhook drain worker disabled",
            reason="webhook_drain_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()
        if drain_enabled and drain_worker.is_running:
            await drain_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the loyalty API service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name=SERVICE_NAME,
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
