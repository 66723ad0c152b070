"""Loyalty ledger, redemptions and webhook events.

Revision ID: 20261001_01
Revises:
Create Date: 2026-10-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261001_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


pos_provider_enum = sa.Enum("SQUARE", name="pos_provider_enum")
webhook_provider_enum = sa.Enum("SQUARE", name="webhook_provider_enum")
webhook_event_status = sa.Enum("RECEIVED", "PROCESSED", "FAILED", name="webhook_event_status")
ledger_entry_kind = sa.Enum("EARN", "REDEEM", "REFUND", name="ledger_entry_kind")
reward_type_enum = sa.Enum("POINTS_BASED", "ITEM_BASED", name="reward_type_enum")
earn_type_enum = sa.Enum("POINTS_PER_DOLLAR", "ITEM_POINTS", name="earn_type_enum")
redemption_status = sa.Enum(
    "PENDING", "IN_PROGRESS", "CONFIRMED", "CANCELED", "EXPIRED", name="redemption_status"
)
redemption_cancel_reason = sa.Enum("SUPERSEDED", "CUSTOMER", "EXPIRED", name="redemption_cancel_reason")

_UUID = postgresql.UUID(as_uuid=True)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "customers",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("phone_number", sa.String(), nullable=True, unique=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "merchant_locations",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", pos_provider_enum, nullable=False),
        sa.Column("provider_location_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("provider", "provider_location_id", name="uq_merchant_locations_provider_location"),
    )
    op.create_table(
        "provider_customer_links",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", pos_provider_enum, nullable=False),
        sa.Column("provider_customer_id", sa.String(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "merchant_id",
            "provider",
            "provider_customer_id",
            name="uq_provider_customer_links_merchant_customer",
        ),
    )
    op.create_table(
        "rewards",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reward_type", reward_type_enum, nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "reward_programs",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("earn_type", earn_type_enum, nullable=False),
        sa.Column("earn_params", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "customer_item_progress",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("customer_id", _UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", _UUID, sa.ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("customer_id", "reward_id", name="uq_customer_item_progress_customer_reward"),
    )
    op.create_table(
        "redemptions",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("customer_id", _UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", _UUID, sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="PENDING"),
        sa.Column("token", sa.String(64), nullable=False, unique=True),
        sa.Column("pin_code", sa.String(6), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("locked_at", nullable=True),
        _timestamp("confirmed_at", nullable=True),
        _timestamp("canceled_at", nullable=True),
        sa.Column("cancel_reason", redemption_cancel_reason, nullable=True),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("provider_order_id", sa.String(), nullable=True),
        sa.Column("points_deducted", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("merchant_id", "provider_payment_id", name="uq_redemptions_merchant_payment"),
    )
    op.create_index(
        "ix_redemptions_customer_merchant_status",
        "redemptions",
        ["customer_id", "merchant_id", "status"],
    )
    op.create_index(
        "uq_redemptions_one_pending",
        "redemptions",
        ["customer_id", "merchant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )
    op.create_table(
        "ledger_entries",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("customer_id", _UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", ledger_entry_kind, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=True),
        sa.Column("redemption_id", _UUID, sa.ForeignKey("redemptions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("merchant_id", "kind", "external_ref", name="uq_ledger_entries_merchant_kind_ref"),
    )
    op.create_index("ix_ledger_entries_customer_merchant", "ledger_entries", ["customer_id", "merchant_id"])
    op.create_table(
        "customer_balances",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("customer_id", _UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("customer_id", "merchant_id", name="uq_customer_balances_customer_merchant"),
    )
    op.create_table(
        "webhook_events",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("provider", webhook_provider_enum, nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", webhook_event_status, nullable=False, server_default="RECEIVED"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("merchant_id", _UUID, sa.ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True),
        _timestamp("received_at"),
        _timestamp("processed_at", nullable=True),
        sa.UniqueConstraint("provider", "external_id", name="uq_webhook_events_provider_external"),
    )
    op.create_index("ix_webhook_events_status_received", "webhook_events", ["status", "received_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_status_received", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("customer_balances")
    op.drop_index("ix_ledger_entries_customer_merchant", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("uq_redemptions_one_pending", table_name="redemptions")
    op.drop_index("ix_redemptions_customer_merchant_status", table_name="redemptions")
    op.drop_table("redemptions")
    op.drop_table("customer_item_progress")
    op.drop_table("reward_programs")
    op.drop_table("rewards")
    op.drop_table("provider_customer_links")
    op.drop_table("customers")
    op.drop_table("merchant_locations")
    op.drop_table("merchants")

    bind = op.get_bind()
    for enum in (
        redemption_cancel_reason,
        redemption_status,
        earn_type_enum,
        reward_type_enum,
        ledger_entry_kind,
        webhook_event_status,
        webhook_provider_enum,
        pos_provider_enum,
    ):
        enum.drop(bind, checkfirst=True)
