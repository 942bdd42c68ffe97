"""audit entry review columns

Revision ID: 202610150001
Revises: 202610010001
Create Date: 2026-10-15
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610150001"
down_revision = "202610010001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "audit_logs",
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.add_column("audit_logs", sa.Column("reviewed_by", sa.String(), nullable=True))
    op.add_column("audit_logs", sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("audit_logs", sa.Column("review_notes", sa.String(), nullable=True))
    op.create_index("ix_audit_logs_reviewed", "audit_logs", ["reviewed"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_reviewed", table_name="audit_logs")
    op.drop_column("audit_logs", "review_notes")
    op.drop_column("audit_logs", "reviewed_at")
    op.drop_column("audit_logs", "reviewed_by")
    op.drop_column("audit_logs", "reviewed")
