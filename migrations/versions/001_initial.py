"""Initial migration - create subscription_records, payment_attempts,
webhook_events and admin_audit_log tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

subscription_tier = postgresql.ENUM(
    "free", "explorer", "traveler", "enterprise", name="subscription_tier", create_type=False
)
billing_interval = postgresql.ENUM("monthly", "yearly", name="billing_interval", create_type=False)
subscription_status = postgresql.ENUM(
    "none",
    "trialing",
    "active",
    "past_due",
    "incomplete",
    "canceled",
    name="subscription_status",
    create_type=False,
)
payment_attempt_status = postgresql.ENUM(
    "succeeded", "failed", name="payment_attempt_status", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (subscription_tier, billing_interval, subscription_status, payment_attempt_status):
        enum_type.create(bind, checkfirst=True)

    # Create subscription_records table
    op.create_table(
        "subscription_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=False),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column("tier", subscription_tier, nullable=False),
        sa.Column("interval", billing_interval, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_tier", subscription_tier, nullable=True),
        sa.Column("pending_interval", billing_interval, nullable=True),
        sa.Column("pending_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_schedule_id", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscription_records"),
        sa.UniqueConstraint(
            "provider_subscription_id",
            name="uq_subscription_records_provider_subscription_id",
        ),
    )
    op.create_index(
        "ix_subscription_records_subscriber_id", "subscription_records", ["subscriber_id"]
    )
    op.create_index("ix_subscription_records_status", "subscription_records", ["status"])
    # At most one live subscription per subscriber
    op.create_index(
        "uq_subscription_records_live_subscriber",
        "subscription_records",
        ["subscriber_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('trialing', 'active', 'past_due', 'incomplete')"),
    )

    # Create payment_attempts table
    op.create_table(
        "payment_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=False),
        sa.Column("provider_invoice_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", payment_attempt_status, nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_payment_attempts"),
    )
    op.create_index("ix_payment_attempts_subscriber_id", "payment_attempts", ["subscriber_id"])
    op.create_index(
        "ix_payment_attempts_provider_invoice_id", "payment_attempts", ["provider_invoice_id"]
    )
    op.create_index("ix_payment_attempts_created_at", "payment_attempts", ["created_at"])

    # Create webhook_events table
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processing_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processing_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_webhook_events"),
        sa.UniqueConstraint("provider_event_id", name="uq_webhook_events_provider_event_id"),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_processed", "webhook_events", ["processed"])

    # Create admin_audit_log table
    op.create_table(
        "admin_audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_admin_audit_log"),
    )
    op.create_index("ix_admin_audit_log_actor_id", "admin_audit_log", ["actor_id"])
    op.create_index("ix_admin_audit_log_created_at", "admin_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("admin_audit_log")
    op.drop_table("webhook_events")
    op.drop_table("payment_attempts")
    op.drop_table("subscription_records")
    bind = op.get_bind()
    for enum_type in (payment_attempt_status, subscription_status, billing_interval, subscription_tier):
        enum_type.drop(bind, checkfirst=True)
