"""add hot-path indexes for queue claims and campaign paging

Revision ID: 0002_hot_path_indexes
Revises: 0001_initial
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_queue_jobs_queue_status_run_at",
        "queue_jobs",
        ["queue", "status", "run_at"],
    )
    op.create_index(
        "ix_campaign_recipients_campaign_status_created",
        "campaign_recipients",
        ["campaign_id", "status", "created_at"],
    )
    op.create_index(
        "ix_discount_codes_pool_status_created",
        "discount_codes",
        ["pool_id", "status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_discount_codes_pool_status_created", table_name="discount_codes")
    op.drop_index("ix_campaign_recipients_campaign_status_created", table_name="campaign_recipients")
    op.drop_index("ix_queue_jobs_queue_status_run_at", table_name="queue_jobs")
