"""Inbound POS webhook events and their dedup/status helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import utcnow
from loyalty_api.db.base import Base
from loyalty_api.db.idempotent import insert_or_ignore


class WebhookProviderEnum(str, Enum):
    SQUARE = "square"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """Durable record for every inbound provider event."""

    __tablename__ = "webhook_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(SqlEnum(WebhookProviderEnum, name="webhook_provider_enum"), nullable=False)
    external_id = Column(String(128), nullable=False)
    event_type = Column(String, nullable=True)
    payload_json = Column("payload", JSON, nullable=True)
    status = Column(
        SqlEnum(WebhookEventStatus, name="webhook_event_status"),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
        server_default=WebhookEventStatus.RECEIVED.name,
    )
    error_message = Column(Text, nullable=True)
    merchant_id = Column(PG_UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_webhook_events_provider_external"),
        Index("ix_webhook_events_status_received", "status", "received_at"),
    )


@dataclass(slots=True)
class RecordedWebhookEvent:
    """Result container for webhook event ingestion."""

    event: WebhookEvent
    created: bool


async def record_webhook_event(
    session: AsyncSession,
    *,
    provider: WebhookProviderEnum,
    external_id: str,
    event_type: str | None,
    payload: dict[str, Any] | None,
) -> RecordedWebhookEvent:
    """Persist the webhook event unless the provider already delivered it."""

    created = await insert_or_ignore(
        session,
        WebhookEvent,
        {
            "id": uuid4(),
            "provider": provider,
            "external_id": external_id,
            "event_type": event_type,
            "payload_json": payload,
            "status": WebhookEventStatus.RECEIVED,
            "received_at": utcnow(),
        },
        conflict_columns=("provider", "external_id"),
    )
    stmt = select(WebhookEvent).where(
        WebhookEvent.provider == provider,
        WebhookEvent.external_id == external_id,
    )
    result = await session.execute(stmt)
    return RecordedWebhookEvent(event=result.scalar_one(), created=created)


async def finalize_webhook_event(
    session: AsyncSession,
    *,
    event_id: UUID,
    status: WebhookEventStatus,
    error_message: str | None = None,
    merchant_id: UUID | None = None,
    processed_at: datetime | None = None,
) -> bool:
    """Move a RECEIVED event to a terminal status; False when it was already terminal."""

    if status is WebhookEventStatus.RECEIVED:
        raise ValueError("Webhook events can only be finalized to a terminal status")

    values: dict[str, Any] = {
        "status": status,
        "error_message": error_message,
        "processed_at": processed_at or utcnow(),
    }
    if merchant_id is not None:
        values["merchant_id"] = merchant_id

    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.status == WebhookEventStatus.RECEIVED)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def fetch_stale_received_events(
    session: AsyncSession,
    *,
    received_before: datetime,
    limit: int = 50,
) -> list[WebhookEvent]:
    """Return events still RECEIVED that were recorded before the cutoff, oldest first."""

    stmt = (
        select(WebhookEvent)
        .where(
            WebhookEvent.status == WebhookEventStatus.RECEIVED,
            WebhookEvent.received_at < received_before,
        )
        .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
