"""Create idempotency_records table.

Revision ID: 005_idempotency_records
Revises: 004_subscriptions
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "005_idempotency_records"
down_revision: str | None = "004_subscriptions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "idempotency_records",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("operation", sa.Text(), nullable=False),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'in_flight'")),
        sa.Column("request_hash", sa.Text(), nullable=True),
        sa.Column("response", JSONB(), nullable=True),
        sa.Column("error", JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", "operation", name="pk_idempotency_records"),
        sa.CheckConstraint(
            "status IN ('in_flight','completed','failed')",
            name="ck_idempotency_record_status",
        ),
    )
    op.create_index("idx_idempotency_records_expires", "idempotency_records", ["expires_at"])


def downgrade() -> None:
    op.drop_index("idx_idempotency_records_expires", table_name="idempotency_records")
    op.drop_table("idempotency_records")
