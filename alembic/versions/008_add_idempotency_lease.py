"""Add in-flight lease to idempotency_records.

Revision ID: 008_idempotency_lease
Revises: 007_billing_events
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "008_idempotency_lease"
down_revision: str | None = "007_billing_events"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "idempotency_records",
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute("UPDATE idempotency_records SET locked_until = expires_at")
    op.alter_column("idempotency_records", "locked_until", nullable=False)


def downgrade() -> None:
    op.drop_column("idempotency_records", "locked_until")
