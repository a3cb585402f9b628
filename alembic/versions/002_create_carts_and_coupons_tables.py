"""Create carts, cart_items and coupons tables.

Revision ID: 002_carts_coupons
Revises: 001_users
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "002_carts_coupons"
down_revision: str | None = "001_users"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "carts",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
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
    )
    op.create_table(
        "cart_items",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "cart_id",
            UUID(as_uuid=True),
            sa.ForeignKey("carts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("unit_price", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.CheckConstraint("quantity >= 0", name="ck_cart_item_quantity"),
    )
    op.create_table(
        "coupons",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("discount_percentage", sa.Integer(), nullable=False),
        sa.Column(
            "min_purchase_amount", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
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
            "discount_percentage > 0 AND discount_percentage <= 100",
            name="ck_coupon_discount_percentage",
        ),
        sa.CheckConstraint("min_purchase_amount >= 0", name="ck_coupon_min_purchase"),
    )
    op.create_index("idx_coupons_user_active", "coupons", ["user_id", "is_active"])


def downgrade() -> None:
    op.drop_index("idx_coupons_user_active", table_name="coupons")
    op.drop_table("coupons")
    op.drop_table("cart_items")
    op.drop_table("carts")
