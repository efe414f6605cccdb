"""Monthly flat-rate bill generation."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.bill import Bill, BillStatus, BillType
from src.models.customer import Customer
from src.models.notification_request import NotificationEvent
from src.services.allocation_service import ZERO, to_money
from src.services.db import unit_of_work
from src.services.errors import BillingEngineError, ConflictError, UnitError, ValidationError
from src.services.ledger_service import LedgerService
from src.services.notification_service import NotificationService
from src.services.period_service import BillingPeriod, billing_period
from src.services.settings_service import SettingsService, SettingsSnapshot

logger = logging.getLogger(__name__)


@dataclass
class BillSummary:
    """Plain view of a generated (or previewed) bill."""

    customer_id: int
    bill_number: str
    previous_balance: Decimal
    current_charges: Decimal
    credit_applied: Decimal
    total_amount: Decimal
    balance: Decimal
    due_date: date
    status: str
    bill_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "bill_id": self.bill_id,
            "customer_id": self.customer_id,
            "bill_number": self.bill_number,
            "previous_balance": f"{self.previous_balance:.2f}",
            "current_charges": f"{self.current_charges:.2f}",
            "credit_applied": f"{self.credit_applied:.2f}",
            "total_amount": f"{self.total_amount:.2f}",
            "balance": f"{self.balance:.2f}",
            "due_date": self.due_date.isoformat(),
            "status": self.status,
        }


@dataclass
class BillingRunResult:
    """Outcome of one billing run."""

    billing_month: date
    preview: bool = False
    created: int = 0
    skipped: int = 0
    errors: list[UnitError] = field(default_factory=list)
    bills: list[BillSummary] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "billing_month": self.billing_month.isoformat(),
            "preview": self.preview,
            "created": self.created,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "errors": [error.to_dict() for error in self.errors],
            "bills": [bill.to_dict() for bill in self.bills],
        }


def make_bill_number(period: BillingPeriod, customer: Customer) -> str:
    """Deterministic bill number, e.g. BILL-202403-G3-17.

    Raises:
        ValidationError: If the customer's zone is malformed
    """
    return f"BILL-{period.label}-{customer.zone_code}-{customer.id}"


class BillingService:
    """Generates one flat-rate bill per active customer per month.

    Each customer is its own unit of work: a failure for one customer never
    affects the others, and re-running a month only skips existing bills.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db
        self.ledger = LedgerService(db)

    def _customers(self, customer_ids: list[int] | None) -> list[Customer]:
        stmt = select(Customer).where(Customer.is_active.is_(True)).order_by(Customer.id)
        if customer_ids is not None:
            stmt = stmt.where(Customer.id.in_(customer_ids))
        customers = list(self.db.execute(stmt).scalars())
        if customer_ids is not None:
            missing = set(customer_ids) - {c.id for c in customers}
            if missing:
                logger.warning("Skipping unknown or inactive customers: %s", sorted(missing))
        return customers

    def _bill_exists(self, customer_id: int, period: BillingPeriod) -> bool:
        return (
            self.db.execute(
                select(Bill.id).where(
                    Bill.customer_id == customer_id,
                    Bill.billing_period_start == period.start,
                )
            ).first()
            is not None
        )

    def _bill_customer(
        self,
        customer: Customer,
        period: BillingPeriod,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> BillSummary:
        if self._bill_exists(customer.id, period):
            raise ConflictError(f"Bill for {period.label} already exists for customer {customer.id}")

        bill_number = make_bill_number(period, customer)

        current_charges = to_money(settings.flat_rate_for(customer.customer_type))
        if current_charges <= 0:
            raise ValidationError(
                f"Flat rate for {customer.customer_type} must be positive",
                code="invalid_rate",
            )
        previous_balance = self.ledger.customer_unpaid_total(customer.id)

        bill = Bill(
            customer_id=customer.id,
            bill_number=bill_number,
            billing_period_start=period.start,
            billing_period_end=period.end,
            previous_balance=previous_balance,
            current_charges=current_charges,
            fines_applied=ZERO,
            credit_applied=ZERO,
            amount_paid=ZERO,
            total_amount=previous_balance + current_charges,
            due_date=period.due_date(settings.default_billing_day, settings.payment_due_days),
            status=BillStatus.PENDING.value,
            bill_type=BillType.FLAT_RATE.value,
        )
        self.db.add(bill)
        self.db.flush()

        credit = self.ledger.apply_credit(customer, bill, now)

        NotificationService.emit(
            self.db,
            NotificationEvent.BILL_GENERATED,
            customer.id,
            customer_name=customer.full_name,
            account_number=customer.account_number,
            bill_number=bill.bill_number,
            billing_month=period.start.strftime("%B %Y"),
            amount=bill.balance,
            total_amount=bill.total_amount,
            due_date=bill.due_date,
        )

        return BillSummary(
            bill_id=bill.id,
            customer_id=customer.id,
            bill_number=bill.bill_number,
            previous_balance=previous_balance,
            current_charges=current_charges,
            credit_applied=credit,
            total_amount=bill.total_amount,
            balance=bill.balance,
            due_date=bill.due_date,
            status=bill.status,
        )

    def generate(
        self,
        billing_month: date,
        customer_ids: list[int] | None = None,
        preview: bool = False,
        cancel_event: threading.Event | None = None,
        settings: SettingsSnapshot | None = None,
    ) -> BillingRunResult:
        """Generate bills for a month.

        Args:
            billing_month: Any day in the month to bill
            customer_ids: Restrict to these customers (default: all active)
            preview: Compute the bills but roll every unit back
            cancel_event: Stop before the next customer once set
            settings: Settings snapshot (read from the database when omitted)

        Returns:
            BillingRunResult with created/skipped counts and per-customer errors
        """
        period = billing_period(billing_month)
        result = BillingRunResult(billing_month=period.start, preview=preview)
        if settings is None:
            settings = SettingsService(self.db).snapshot()

        customers = self._customers(customer_ids)
        # Release the read transaction before per-customer units start
        self.db.rollback()
        now = datetime.now(timezone.utc)

        for customer in customers:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Billing run for %s cancelled", period.label)
                result.cancelled = True
                break

            customer_id = customer.id
            try:
                with unit_of_work(self.db, commit=not preview):
                    summary = self._bill_customer(customer, period, settings, now)
            except ConflictError:
                result.skipped += 1
                logger.debug("Bill for customer %d in %s exists, skipping", customer_id, period.label)
                continue
            except BillingEngineError as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.warning("Billing failed for customer %d: %s", customer_id, e.message)
                continue
            except Exception as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.exception("Unexpected billing failure for customer %d", customer_id)
                continue

            if preview:
                summary.bill_id = None
            result.bills.append(summary)
            result.created += 1

        logger.info(
            "Billing %s%s: created=%d skipped=%d errors=%d",
            period.label,
            " (preview)" if preview else "",
            result.created,
            result.skipped,
            len(result.errors),
        )
        return result


__all__ = ["BillingService", "BillingRunResult", "BillSummary", "make_bill_number"]
