"""balance ledger tables

Revision ID: balance_20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "balance_20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("balance", sa.Numeric(18, 2), nullable=False, server_default="0.00"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "ledger_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("delta", sa.Numeric(18, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(18, 2), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("source_type", "source_id", name="uq_ledger_event_source"),
    )
    op.create_index("ix_ledger_events_user_id", "ledger_events", ["user_id"])
    op.create_index("ix_ledger_events_user_id_id", "ledger_events", ["user_id", "id"])

    op.create_table(
        "fund_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("paypal_email", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("request_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("processed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(length=255), nullable=True),
        sa.Column("ledger_event_id", sa.Integer(), sa.ForeignKey("ledger_events.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_fund_requests_user_id", "fund_requests", ["user_id"])
    op.create_index("ix_fund_requests_status", "fund_requests", ["status"])
    op.create_index("ix_fund_requests_request_date", "fund_requests", ["request_date"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_name", sa.String(length=255), nullable=False),
        sa.Column("order_type", sa.String(length=64), nullable=False, server_default="guest_post"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("failure_code", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("ledger_event_id", sa.Integer(), sa.ForeignKey("ledger_events.id"), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status_processing_started", "orders", ["status", "processing_started_at"])


def downgrade() -> None:
    op.drop_index("ix_orders_status_processing_started", table_name="orders")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_fund_requests_request_date", table_name="fund_requests")
    op.drop_index("ix_fund_requests_status", table_name="fund_requests")
    op.drop_index("ix_fund_requests_user_id", table_name="fund_requests")
    op.drop_table("fund_requests")
    op.drop_index("ix_ledger_events_user_id_id", table_name="ledger_events")
    op.drop_index("ix_ledger_events_user_id", table_name="ledger_events")
    op.drop_table("ledger_events")
    op.drop_table("users")
