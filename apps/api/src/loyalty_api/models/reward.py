"""Reward catalog and earn-rule configuration."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.core.clock import utcnow
from loyalty_api.db.base import Base


class RewardTypeEnum(str, Enum):
    POINTS_BASED = "points_based"
    ITEM_BASED = "item_based"


class EarnTypeEnum(str, Enum):
    POINTS_PER_DOLLAR = "points_per_dollar"
    ITEM_POINTS = "item_points"


class Reward(Base):
    """Redeemable reward. ``config`` is validated into a typed shape per reward type."""

    __tablename__ = "rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    reward_type = Column(SqlEnum(RewardTypeEnum, name="reward_type_enum"), nullable=False)
    config_json = Column("config", JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class RewardProgram(Base):
    """Merchant earn rule; ``earn_params`` is validated per ``earn_type``."""

    __tablename__ = "reward_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    earn_type = Column(SqlEnum(EarnTypeEnum, name="earn_type_enum"), nullable=False)
    earn_params = Column(JSON, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class CustomerItemProgress(Base):
    """Purchased item count towards an item-based reward threshold."""

    __tablename__ = "customer_item_progress"
    __table_args__ = (
        UniqueConstraint("customer_id", "reward_id", name="uq_customer_item_progress_customer_reward"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    item_count = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
