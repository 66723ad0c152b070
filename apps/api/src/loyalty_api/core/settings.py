from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "loyalty-default"
    webhook_task_queue: str = "loyalty-webhooks"

    # Merchant terminal security
    merchant_api_key: str = ""

    # Redemption lifecycle
    redemption_ttl_seconds: int = 300
    redemption_code_max_attempts: int = 10
    redemption_sweep_worker_enabled: bool = False
    redemption_sweep_interval_seconds: int = 60

    # Webhook ingestion
    webhook_drain_worker_enabled: bool = False
    webhook_drain_interval_seconds: int = 30
    webhook_drain_batch_size: int = 50
    webhook_drain_grace_seconds: int = 120

    # Square integration
    square_webhook_signature_key: str | None = None
    square_webhook_notification_url: str | None = None
    square_api_base_url: str = "https://connect.squareup.com"
    square_api_version: str = "2024-01-18"
    square_api_timeout_seconds: float = 10.0
    square_access_token: str | None = None

    # Reconciliation
    reconciliation_lookback_hours: int = 24


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
