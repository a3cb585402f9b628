"""Create billing_events table.

Revision ID: 007_billing_events
Revises: 006_stripe_webhook_events
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "007_billing_events"
down_revision: str | None = "006_stripe_webhook_events"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "billing_events",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("order_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stripe_subscription_id", sa.Text(), nullable=True),
        sa.Column(
            "metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index("idx_billing_events_time", "billing_events", ["created_at"])
    op.create_index("idx_billing_events_type", "billing_events", ["event_type", "created_at"])
    op.create_index("idx_billing_events_order", "billing_events", ["order_id"])


def downgrade() -> None:
    op.drop_index("idx_billing_events_order", table_name="billing_events")
    op.drop_index("idx_billing_events_type", table_name="billing_events")
    op.drop_index("idx_billing_events_time", table_name="billing_events")
    op.drop_table("billing_events")
