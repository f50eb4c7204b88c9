"""add message send lease and one active reservation per campaign

Revision ID: 0003_send_lease
Revises: 0002_hot_path_indexes
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_send_lease"
down_revision = "0002_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("messages", sa.Column("lease_token", sa.String(), nullable=True))
    op.add_column("messages", sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "uq_reservations_active_campaign",
        "discount_code_reservations",
        ["campaign_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_reservations_active_campaign", table_name="discount_code_reservations")
    op.drop_column("messages", "lease_expires_at")
    op.drop_column("messages", "lease_token")
