from __future__ import annotations

from datetime import datetime
import math
from typing import Generic, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class SubmitResult(BaseModel):
    # Intake response handed back to the API layer.
    notification_id: str
    status: str
    scheduled_at: datetime | None = None
    idempotency_key: str | None = None
    is_existing: bool = False


class DeliveryAttemptView(BaseModel):
    attempted_at: datetime
    success: bool
    status: str
    error_message: str | None = None
    retry_after_seconds: int | None = None


class NotificationStatusView(BaseModel):
    notification_id: str
    status: str
    channel: str
    created_at: datetime
    send_at: datetime | None = None
    sent_at: datetime | None = None
    attempts: list[DeliveryAttemptView] = Field(default_factory=list)


class CustomerNotificationHistoryItem(BaseModel):
    notification_id: str
    customer_id: str
    template_key: str | None = None
    channel: str
    status: str
    attempt_count: int = 0
    last_error: str | None = None
    created_at: datetime
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    rendered_preview: str | None = None


class PagedResult(BaseModel, Generic[T]):
    items: list[T] = Field(default_factory=list)
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, *, items: list[T], page: int, page_size: int, total_items: int) -> "PagedResult[T]":
        total_pages = math.ceil(total_items / page_size) if page_size > 0 else 0
        return cls(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )
