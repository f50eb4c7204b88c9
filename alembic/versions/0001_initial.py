"""initial smsflow schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=None if nullable else sa.func.now(), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shops_domain", "shops", ["domain"], unique=True)

    op.create_table(
        "events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("object_id", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False),
        _ts("received_at"),
        _ts("processed_at", nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_shop_id", "events", ["shop_id"])
    op.create_index("ix_events_topic", "events", ["topic"])
    op.create_index("ix_events_dedupe_key", "events", ["dedupe_key"], unique=True)
    op.create_index("ix_events_received_at", "events", ["received_at"])

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("backoff_seconds", sa.Float(), nullable=False),
        sa.Column("remove_on_complete", sa.Integer(), nullable=False),
        sa.Column("remove_on_fail", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        _ts("created_at"),
        _ts("started_at", nullable=True),
        _ts("finished_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_jobs_queue", "queue_jobs", ["queue"])
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])
    op.create_index("ix_queue_jobs_run_at", "queue_jobs", ["run_at"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("phone_e164", sa.String(), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("sms_consent_state", sa.String(), nullable=False),
        sa.Column("sms_consent_source", sa.String(), nullable=True),
        sa.Column("opted_out", sa.Boolean(), nullable=False),
        _ts("unsubscribed_at", nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shop_id", "phone_e164", name="uq_contacts_shop_phone"),
    )
    op.create_index("ix_contacts_shop_id", "contacts", ["shop_id"])
    op.create_index("ix_contacts_customer_id", "contacts", ["customer_id"])
    op.create_index("ix_contacts_phone_e164", "contacts", ["phone_e164"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=True),
        sa.Column("campaign_id", sa.String(), nullable=True),
        sa.Column("automation_id", sa.String(), nullable=True),
        sa.Column("to_phone", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_message_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("trigger_key", sa.String(), nullable=True),
        sa.Column("discount_code_id", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _ts("sent_at", nullable=True),
        _ts("delivered_at", nullable=True),
        _ts("failed_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_messages_shop_id", "messages", ["shop_id"])
    op.create_index("ix_messages_contact_id", "messages", ["contact_id"])
    op.create_index("ix_messages_campaign_id", "messages", ["campaign_id"])
    op.create_index("ix_messages_status", "messages", ["status"])
    op.create_index("ix_messages_provider_message_id", "messages", ["provider_message_id"])
    op.create_index("ix_messages_created_at", "messages", ["created_at"])

    op.create_table(
        "discount_code_pools",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("discount_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("total_codes", sa.Integer(), nullable=False),
        sa.Column("reserved_codes", sa.Integer(), nullable=False),
        sa.Column("used_codes", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("reserved_codes + used_codes <= total_codes", name="ck_pool_counters"),
        sa.CheckConstraint("reserved_codes >= 0 AND used_codes >= 0", name="ck_pool_non_negative"),
    )
    op.create_index("ix_discount_code_pools_shop_id", "discount_code_pools", ["shop_id"])
    op.create_index("ix_discount_code_pools_discount_id", "discount_code_pools", ["discount_id"])

    op.create_table(
        "discount_code_reservations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("pool_id", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _ts("created_at"),
        _ts("released_at", nullable=True),
        sa.ForeignKeyConstraint(["pool_id"], ["discount_code_pools.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discount_code_reservations_pool_id", "discount_code_reservations", ["pool_id"])
    op.create_index("ix_discount_code_reservations_campaign_id", "discount_code_reservations", ["campaign_id"])
    op.create_index("ix_discount_code_reservations_status", "discount_code_reservations", ["status"])
    op.create_index("ix_discount_code_reservations_expires_at", "discount_code_reservations", ["expires_at"])

    op.create_table(
        "discount_codes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("pool_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reservation_id", sa.String(), nullable=True),
        _ts("reserved_at", nullable=True),
        _ts("used_at", nullable=True),
        sa.Column("assigned_to", sa.String(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["pool_id"], ["discount_code_pools.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pool_id", "code", name="uq_discount_codes_pool_code"),
    )
    op.create_index("ix_discount_codes_pool_id", "discount_codes", ["pool_id"])
    op.create_index("ix_discount_codes_status", "discount_codes", ["status"])
    op.create_index("ix_discount_codes_reservation_id", "discount_codes", ["reservation_id"])

    op.create_table(
        "discounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discounts_shop_id", "discounts", ["shop_id"])

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("template_key", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("discount_id", sa.String(), nullable=True),
        sa.Column("utm", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_campaigns_shop_id", "campaigns", ["shop_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    op.create_table(
        "campaign_recipients",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("discount_code_id", sa.String(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "contact_id", name="uq_campaign_recipient"),
    )
    op.create_index("ix_campaign_recipients_campaign_id", "campaign_recipients", ["campaign_id"])
    op.create_index("ix_campaign_recipients_status", "campaign_recipients", ["status"])

    op.create_table(
        "back_in_stock_interests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("inventory_item_id", sa.String(), nullable=False),
        sa.Column("product_title", sa.String(), nullable=True),
        _ts("notified_at", nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_back_in_stock_interests_shop_id", "back_in_stock_interests", ["shop_id"])
    op.create_index(
        "ix_back_in_stock_interests_inventory_item_id", "back_in_stock_interests", ["inventory_item_id"]
    )

    op.create_table(
        "inbound_messages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("from_phone", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("matched_contacts", sa.Integer(), nullable=False),
        sa.Column("provider_timestamp", sa.String(), nullable=True),
        _ts("received_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_inbound_messages_from_phone", "inbound_messages", ["from_phone"])


def downgrade() -> None:
    for table in (
        "inbound_messages",
        "back_in_stock_interests",
        "campaign_recipients",
        "campaigns",
        "discounts",
        "discount_codes",
        "discount_code_reservations",
        "discount_code_pools",
        "messages",
        "contacts",
        "queue_jobs",
        "events",
        "shops",
    ):
        op.drop_table(table)
