"""create notification delivery tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_bigint_pk = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # notification_jobs.notification_id is unique: retries reuse the one job row.
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("template_key", sa.String(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("payload_json", _json, nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("send_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_notifications_idempotency_key"),
    )
    op.create_index("ix_notifications_customer_created", "notifications", ["customer_id", "created_at"])
    op.create_index(
        "ix_notifications_customer_status_created",
        "notifications",
        ["customer_id", "status", "created_at"],
    )
    op.create_index("ix_notifications_status_send_at", "notifications", ["status", "send_at"])

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["notification_id"], ["notifications.id"]),
        sa.UniqueConstraint("notification_id", name="uq_notification_jobs_notification_id"),
    )
    op.create_index("ix_notification_jobs_status_ready", "notification_jobs", ["status", "ready_at"])
    op.create_index(
        "ix_notification_jobs_status_next_attempt",
        "notification_jobs",
        ["status", "next_attempt_at"],
    )

    op.create_table(
        "delivery_attempts",
        sa.Column("id", _bigint_pk, autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("response_message", sa.Text(), nullable=True),
        sa.Column("retry_after_seconds", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_delivery_attempts_notification_attempted",
        "delivery_attempts",
        ["notification_id", "attempted_at"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", _bigint_pk, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("notification_id", sa.String(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_notification_occurred", "audit_logs", ["notification_id", "occurred_at"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])

    op.create_table(
        "notification_templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", name="uq_notification_templates_key"),
    )


def downgrade() -> None:
    op.drop_table("notification_templates")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_notification_occurred", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_delivery_attempts_notification_attempted", table_name="delivery_attempts")
    op.drop_table("delivery_attempts")
    op.drop_index("ix_notification_jobs_status_next_attempt", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status_ready", table_name="notification_jobs")
    op.drop_table("notification_jobs")
    op.drop_index("ix_notifications_status_send_at", table_name="notifications")
    op.drop_index("ix_notifications_customer_status_created", table_name="notifications")
    op.drop_index("ix_notifications_customer_created", table_name="notifications")
    op.drop_table("notifications")
