"""Outbox of notification requests for the external SMS dispatcher."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class NotificationEvent(str, Enum):
    """Events the engine asks the dispatcher to announce."""

    BILL_GENERATED = "bill_generated"
    PAYMENT_RECEIVED = "payment_received"
    FINE_APPLIED = "fine_applied"
    CONTRIBUTION_DUE = "contribution_due"
    BILL_OVERDUE = "bill_overdue"
    CONTRIBUTION_OVERDUE = "contribution_overdue"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationRequest(Base, BaseModel):
    """Notification request written in the same transaction as its cause.

    The dispatcher polls pending rows and marks them sent or failed; the
    engine never waits for delivery.
    """

    __tablename__ = "notification_requests"

    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    """Template variables, e.g. {"customer_name": ..., "amount": "300.00"}."""

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=NotificationStatus.PENDING.value,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_notification_status_created", "status", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<NotificationRequest(id={self.id}, event_type={self.event_type}, "
            f"customer_id={self.customer_id}, status={self.status})>"
        )


__all__ = ["NotificationRequest", "NotificationEvent", "NotificationStatus"]
