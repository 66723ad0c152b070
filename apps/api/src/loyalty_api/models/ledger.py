"""Append-only points ledger and its balance projection."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.core.clock import utcnow
from loyalty_api.db.base import Base


class LedgerEntryKind(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    REFUND = "refund"


class LedgerEntry(Base):
    """Immutable signed point delta. EARN is positive, REDEEM and REFUND negative."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("merchant_id", "kind", "external_ref", name="uq_ledger_entries_merchant_kind_ref"),
        Index("ix_ledger_entries_customer_merchant", "customer_id", "merchant_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    kind = Column(SqlEnum(LedgerEntryKind, name="ledger_entry_kind"), nullable=False)
    points = Column(Integer, nullable=False)
    external_ref = Column(String, nullable=True)
    redemption_id = Column(
        UUID(as_uuid=True), ForeignKey("redemptions.id", ondelete="SET NULL"), nullable=True
    )
    provider_payment_id = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class CustomerBalance(Base):
    """Denormalized balance, always recomputed from the ledger and never decremented directly."""

    __tablename__ = "customer_balances"
    __table_args__ = (
        UniqueConstraint("customer_id", "merchant_id", name="uq_customer_balances_customer_merchant"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
