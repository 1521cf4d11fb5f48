"""billing cycle attempt tracking

Revision ID: 202610170002
Revises: 202610170001
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "202610170002"
down_revision = "202610170001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "billing_cycles",
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("billing_cycles", sa.Column("last_attempt_at", sa.DateTime(), nullable=True))
    op.create_index(
        "ix_billing_cycles_status_attempts_end_date",
        "billing_cycles",
        ["status", "attempts", "end_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_cycles_status_attempts_end_date", table_name="billing_cycles")
    with op.batch_alter_table("billing_cycles") as batch_op:
        batch_op.drop_column("last_attempt_at")
        batch_op.drop_column("attempts")
