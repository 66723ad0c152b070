"""Redemption token lifecycle records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.core.clock import utcnow
from loyalty_api.db.base import Base


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    EXPIRED = "expired"


class RedemptionCancelReason(str, Enum):
    SUPERSEDED = "superseded"
    CUSTOMER = "customer"
    EXPIRED = "expired"


class Redemption(Base):
    """Single-use token/PIN pair spending points (or item progress) on a reward."""

    __tablename__ = "redemptions"
    __table_args__ = (
        UniqueConstraint("merchant_id", "provider_payment_id", name="uq_redemptions_merchant_payment"),
        Index("ix_redemptions_customer_merchant_status", "customer_id", "merchant_id", "status"),
        Index(
            "uq_redemptions_one_pending",
            "customer_id",
            "merchant_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    status = Column(
        SqlEnum(RedemptionStatus, name="redemption_status"),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.name,
    )
    token = Column(String(64), nullable=False, unique=True)
    pin_code = Column(String(6), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(SqlEnum(RedemptionCancelReason, name="redemption_cancel_reason"), nullable=True)
    provider_payment_id = Column(String, nullable=True)
    provider_order_id = Column(String, nullable=True)
    points_deducted = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
