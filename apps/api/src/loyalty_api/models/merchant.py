"""Merchant, location and customer records owned by onboarding collaborators."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.core.clock import utcnow
from loyalty_api.db.base import Base


class POSProviderEnum(str, Enum):
    SQUARE = "square"


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class MerchantLocation(Base):
    """POS location mapped to a merchant; webhooks resolve merchants through it."""

    __tablename__ = "merchant_locations"
    __table_args__ = (
        UniqueConstraint("provider", "provider_location_id", name="uq_merchant_locations_provider_location"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    provider = Column(SqlEnum(POSProviderEnum, name="pos_provider_enum"), nullable=False)
    provider_location_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    phone_number = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class ProviderCustomerLink(Base):
    """Link between a POS-side customer id and a loyalty customer, per merchant."""

    __tablename__ = "provider_customer_links"
    __table_args__ = (
        UniqueConstraint(
            "merchant_id",
            "provider",
            "provider_customer_id",
            name="uq_provider_customer_links_merchant_customer",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    provider = Column(
        SqlEnum(POSProviderEnum, name="pos_provider_enum"), nullable=False
    )
    provider_customer_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
