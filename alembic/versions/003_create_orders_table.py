"""Create orders and order_items tables.

Revision ID: 003_orders
Revises: 002_carts_coupons
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "003_orders"
down_revision: str | None = "002_carts_coupons"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("items_total", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("coupon_code", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_status", sa.Text(), nullable=True),
        sa.Column("processor_payment_intent_id", sa.Text(), nullable=True, unique=True),
        sa.Column("processor_checkout_session_id", sa.Text(), nullable=True, unique=True),
        sa.Column("processor_refund_id", sa.Text(), nullable=True),
        sa.Column("amount_refunded", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failure_code", sa.Text(), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("status_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "status IN ('pending','processing','paid','failed','cancelled','refunded')",
            name="ck_order_status",
        ),
        sa.CheckConstraint(
            "processor_payment_intent_id IS NULL OR processor_checkout_session_id IS NULL",
            name="ck_order_single_processor_ref",
        ),
        sa.CheckConstraint(
            "status = 'pending' OR status = 'cancelled' "
            "OR processor_payment_intent_id IS NOT NULL "
            "OR processor_checkout_session_id IS NOT NULL",
            name="ck_order_processor_ref_required",
        ),
        sa.CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        sa.CheckConstraint(
            "amount_refunded >= 0 AND amount_refunded <= total_amount",
            name="ck_order_amount_refunded",
        ),
    )
    op.create_index("idx_orders_user_created", "orders", ["user_id", "created_at"])
    op.create_index("idx_orders_status_updated", "orders", ["status", "updated_at"])

    op.create_table(
        "order_items",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "order_id",
            UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_item_quantity"),
        sa.CheckConstraint("unit_price >= 0", name="ck_order_item_unit_price"),
    )


def downgrade() -> None:
    op.drop_table("order_items")
    op.drop_index("idx_orders_status_updated", table_name="orders")
    op.drop_index("idx_orders_user_created", table_name="orders")
    op.drop_table("orders")
