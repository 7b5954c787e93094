from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


NOTIFICATION_SCHEDULED = "scheduled"
NOTIFICATION_PENDING = "pending"
NOTIFICATION_SENT = "sent"
NOTIFICATION_FAILED = "failed"
NOTIFICATION_STATUSES = (
    NOTIFICATION_SCHEDULED,
    NOTIFICATION_PENDING,
    NOTIFICATION_SENT,
    NOTIFICATION_FAILED,
)
NOTIFICATION_TERMINAL_STATUSES = frozenset({NOTIFICATION_SENT, NOTIFICATION_FAILED})

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})

ATTEMPT_SUCCESS = "success"
ATTEMPT_FAILED_RETRY = "failed_retry"
ATTEMPT_FAILED = "failed"
ATTEMPT_CONFIG_ERROR = "config_error"

# Portable column types: JSONB and BIGSERIAL on Postgres, plain JSON/INTEGER rowid on SQLite.
_JSONType = JSON().with_variant(JSONB(), "postgresql")
_BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops offsets on write, so naive values read back are tagged as UTC
    and aware values are normalised to UTC before binding.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_notifications_idempotency_key"),
        Index("ix_notifications_customer_created", "customer_id", "created_at"),
        Index("ix_notifications_customer_status_created", "customer_id", "status", "created_at"),
        Index("ix_notifications_status_send_at", "status", "send_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recipient: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    template_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Literal content; also the fallback when template rendering is unavailable.
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(_JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime())
    send_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    # NULLs never collide, so only keyed submissions are deduplicated.
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"
    __table_args__ = (
        # One job row per notification for its whole life; retries reuse the row.
        UniqueConstraint("notification_id", name="uq_notification_jobs_notification_id"),
        Index("ix_notification_jobs_status_ready", "status", "ready_at"),
        Index("ix_notification_jobs_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_id: Mapped[str] = mapped_column(String, ForeignKey("notifications.id"))
    enqueued_at: Mapped[datetime] = mapped_column(UtcDateTime())
    ready_at: Mapped[datetime] = mapped_column(UtcDateTime())
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)


class DeliveryAttempt(Base):
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        Index("ix_delivery_attempts_notification_attempted", "notification_id", "attempted_at"),
    )

    # Append-only; rows are never updated or deleted.
    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String)
    attempted_at: Mapped[datetime] = mapped_column(UtcDateTime())
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[str] = mapped_column(String)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_after_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_notification_occurred", "notification_id", "occurred_at"),
        Index("ix_audit_logs_action", "action"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime())
    action: Mapped[str] = mapped_column(String)
    notification_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"
    __table_args__ = (UniqueConstraint("key", name="uq_notification_templates_key"),)

    # Managed by the admin surface; the delivery engine only reads templates.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String)
    subject: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime())
    updated_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
