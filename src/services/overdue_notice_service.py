"""Daily overdue notices for unpaid bills and contributions.

One bill_overdue and one contribution_overdue request per customer per day,
summarising everything past due. Re-running the same day only skips.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.bill import OPEN_BILL_STATUSES, Bill
from src.models.contribution import OPEN_CONTRIBUTION_STATUSES, Contribution
from src.models.customer import Customer
from src.models.notification_request import NotificationEvent, NotificationRequest
from src.services.allocation_service import ZERO, to_money
from src.services.db import unit_of_work
from src.services.errors import BillingEngineError, ConflictError, UnitError
from src.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class OverdueItem:
    reference: str
    due_date: date
    outstanding: Decimal


@dataclass
class OverdueNoticeResult:
    """Outcome of one overdue notice run."""

    as_of: date
    bill_notices: int = 0
    contribution_notices: int = 0
    skipped: int = 0
    errors: list[UnitError] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "as_of": self.as_of.isoformat(),
            "bill_notices": self.bill_notices,
            "contribution_notices": self.contribution_notices,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "errors": [error.to_dict() for error in self.errors],
        }


class OverdueNoticeService:
    """Queues overdue reminders for the SMS dispatcher."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def _overdue_bills(self, as_of: date) -> dict[int, list[OverdueItem]]:
        rows = self.db.execute(
            select(
                Bill.customer_id,
                Bill.bill_number,
                Bill.due_date,
                Bill.current_charges,
                Bill.fines_applied,
                Bill.amount_paid,
            )
            .join(Customer, Customer.id == Bill.customer_id)
            .where(
                Bill.status.in_([status.value for status in OPEN_BILL_STATUSES]),
                Bill.due_date < as_of,
                Customer.is_active.is_(True),
            )
            .order_by(Bill.customer_id, Bill.due_date, Bill.id)
        ).all()
        grouped: dict[int, list[OverdueItem]] = {}
        for customer_id, bill_number, due_date, charges, fines, paid in rows:
            outstanding = to_money(Decimal(charges) + Decimal(fines) - Decimal(paid))
            if outstanding > 0:
                grouped.setdefault(customer_id, []).append(OverdueItem(bill_number, due_date, outstanding))
        return grouped

    def _overdue_contributions(self, as_of: date) -> dict[int, list[OverdueItem]]:
        rows = self.db.execute(
            select(
                Contribution.customer_id,
                Contribution.contribution_month,
                Contribution.due_date,
                Contribution.amount_required,
                Contribution.amount_paid,
            )
            .join(Customer, Customer.id == Contribution.customer_id)
            .where(
                Contribution.status.in_([status.value for status in OPEN_CONTRIBUTION_STATUSES]),
                Contribution.due_date < as_of,
                Customer.is_active.is_(True),
            )
            .order_by(Contribution.customer_id, Contribution.contribution_month)
        ).all()
        grouped: dict[int, list[OverdueItem]] = {}
        for customer_id, month, due_date, required, paid in rows:
            outstanding = to_money(Decimal(required) - Decimal(paid))
            if outstanding > 0:
                grouped.setdefault(customer_id, []).append(OverdueItem(f"{month:%Y-%m}", due_date, outstanding))
        return grouped

    def _notify(
        self,
        customer_id: int,
        event: NotificationEvent,
        items: list[OverdueItem],
        as_of: date,
    ) -> None:
        day_start = datetime.combine(as_of, time.min, tzinfo=timezone.utc)
        already_sent = self.db.execute(
            select(NotificationRequest.id).where(
                NotificationRequest.customer_id == customer_id,
                NotificationRequest.event_type == event.value,
                NotificationRequest.created_at >= day_start,
            )
        ).first()
        if already_sent is not None:
            raise ConflictError(f"{event.value} already queued for customer {customer_id} on {as_of}")

        customer = self.db.get(Customer, customer_id)
        oldest = min(item.due_date for item in items)
        NotificationService.emit(
            self.db,
            event,
            customer_id,
            customer_name=customer.full_name,
            account_number=customer.account_number,
            amount=sum((item.outstanding for item in items), ZERO),
            days_overdue=(as_of - oldest).days,
            references=[item.reference for item in items],
        )

    def send_overdue_notices(
        self,
        as_of: date,
        cancel_event: threading.Event | None = None,
    ) -> OverdueNoticeResult:
        """Queue today's overdue notices; one unit per customer and event."""
        result = OverdueNoticeResult(as_of=as_of)
        work = [
            (NotificationEvent.BILL_OVERDUE, customer_id, items)
            for customer_id, items in self._overdue_bills(as_of).items()
        ] + [
            (NotificationEvent.CONTRIBUTION_OVERDUE, customer_id, items)
            for customer_id, items in self._overdue_contributions(as_of).items()
        ]
        self.db.rollback()

        for event, customer_id, items in work:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Overdue notices for %s cancelled", as_of)
                result.cancelled = True
                break

            try:
                with unit_of_work(self.db):
                    self._notify(customer_id, event, items, as_of)
            except ConflictError:
                result.skipped += 1
                continue
            except BillingEngineError as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.warning("Overdue notice failed for customer %d: %s", customer_id, e.message)
                continue
            except Exception as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.exception("Unexpected overdue notice failure for customer %d", customer_id)
                continue

            if event == NotificationEvent.BILL_OVERDUE:
                result.bill_notices += 1
            else:
                result.contribution_notices += 1

        logger.info(
            "Overdue notices %s: bills=%d contributions=%d skipped=%d errors=%d",
            as_of,
            result.bill_notices,
            result.contribution_notices,
            result.skipped,
            len(result.errors),
        )
        return result


__all__ = ["OverdueNoticeService", "OverdueNoticeResult"]
