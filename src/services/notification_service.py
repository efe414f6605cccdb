"""Notification requests for the external SMS dispatcher.

The engine never sends messages itself. It writes NotificationRequest rows into
the session of the unit that caused them (bill generated, fine applied, payment
received), so a request exists if and only if its cause committed. The
dispatcher polls pending rows and reports back.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from src.models.notification_request import (
    NotificationEvent,
    NotificationRequest,
    NotificationStatus,
)

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class NotificationService:
    """Outbox operations for notification requests."""

    @staticmethod
    def emit(
        db: Session,
        event: NotificationEvent,
        customer_id: int,
        **variables: Any,
    ) -> NotificationRequest:
        """Queue a notification request in the caller's transaction."""
        request = NotificationRequest(
            event_type=event.value,
            customer_id=customer_id,
            payload={key: _jsonable(value) for key, value in variables.items()},
            status=NotificationStatus.PENDING.value,
        )
        db.add(request)
        return request

    @staticmethod
    def fetch_pending(db: Session, limit: int = 100) -> list[NotificationRequest]:
        """Oldest pending requests, for the dispatcher."""
        return list(
            db.execute(
                select(NotificationRequest)
                .where(NotificationRequest.status == NotificationStatus.PENDING.value)
                .order_by(NotificationRequest.id)
                .limit(limit)
            ).scalars()
        )

    @staticmethod
    def mark(db: Session, request_id: int, status: NotificationStatus) -> None:
        """Record the dispatcher's outcome for one request (caller commits)."""
        request = db.get(NotificationRequest, request_id)
        if request is None:
            logger.warning("Notification request %d not found", request_id)
            return
        request.status = status.value
        request.processed_at = datetime.now(timezone.utc)

    @staticmethod
    def purge_processed(db: Session, before: datetime) -> int:
        """Delete sent/failed requests created before a cutoff (caller commits)."""
        result = db.execute(
            delete(NotificationRequest).where(
                NotificationRequest.status != NotificationStatus.PENDING.value,
                NotificationRequest.created_at < before,
            )
        )
        return result.rowcount or 0


__all__ = ["NotificationService"]
