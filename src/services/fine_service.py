"""Late payment fines for overdue bills, manual fines and waivers."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.models.bill import Bill, BillStatus
from src.models.customer import Customer
from src.models.fine import AppliedFine, FineCategory, FineStatus, FineType
from src.models.notification_request import NotificationEvent
from src.services.allocation_service import ZERO, to_money
from src.services.audit_service import AuditService
from src.services.db import unit_of_work
from src.services.errors import (
    BillingEngineError,
    ConflictError,
    NotFoundError,
    UnitError,
    ValidationError,
)
from src.services.notification_service import NotificationService
from src.services.settings_service import SettingsService, SettingsSnapshot

logger = logging.getLogger(__name__)

MINIMUM_FINE = Decimal("1.00")


@dataclass
class FineRunResult:
    """Outcome of one fine application run."""

    as_of: date
    applied: int = 0
    bills_examined: int = 0
    skipped: int = 0
    errors: list[UnitError] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "as_of": self.as_of.isoformat(),
            "applied": self.applied,
            "bills_examined": self.bills_examined,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "errors": [error.to_dict() for error in self.errors],
        }


def fine_episode(days_past_grace: int, escalation_days: int) -> int:
    """Overdue episode a fine belongs to.

    With escalation disabled (0) every bill gets at most one fine per fine
    type. Otherwise a new episode starts every ``escalation_days`` days.
    """
    if escalation_days <= 0:
        return 1
    return 1 + max(days_past_grace, 0) // escalation_days


def compute_fine_amount(fine_type: FineType, bill: Bill) -> Decimal:
    """Fixed fine amount, or a percentage of the bill's current charges."""
    if fine_type.is_percentage:
        return to_money(Decimal(bill.current_charges) * Decimal(fine_type.amount) / Decimal(100))
    return to_money(fine_type.amount)


class FineService:
    """Late payment fines, manual fines and waivers.

    Late fines are applied at most once per bill, fine type and episode.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def _late_fine_types(self) -> list[FineType]:
        return list(
            self.db.execute(
                select(FineType)
                .where(
                    FineType.is_active.is_(True),
                    FineType.fine_type == FineCategory.LATE_PAYMENT.value,
                )
                .order_by(FineType.id)
            ).scalars()
        )

    def _overdue_bill_ids(self, cutoff: date) -> list[int]:
        return list(
            self.db.execute(
                select(Bill.id)
                .join(Customer, Customer.id == Bill.customer_id)
                .where(
                    Bill.status != BillStatus.PAID.value,
                    Bill.due_date < cutoff,
                    Customer.is_active.is_(True),
                )
                .order_by(Bill.due_date, Bill.id)
            ).scalars()
        )

    def _fine_bill(
        self,
        bill_id: int,
        fine_type: FineType,
        grace_days: int,
        as_of: date,
        settings: SettingsSnapshot,
    ) -> AppliedFine | None:
        """Apply one fine to one bill. Returns None when nothing is due."""
        bill = self.db.execute(
            select(Bill).where(Bill.id == bill_id).with_for_update()
        ).scalar_one()
        if bill.status == BillStatus.PAID.value:
            return None

        days_past_grace = (as_of - bill.due_date).days - grace_days
        episode = fine_episode(days_past_grace, settings.fine_escalation_days)

        existing = self.db.execute(
            select(AppliedFine.id).where(
                AppliedFine.bill_id == bill.id,
                AppliedFine.fine_type_id == fine_type.id,
                AppliedFine.episode == episode,
            )
        ).first()
        if existing is not None:
            raise ConflictError(
                f"Fine type {fine_type.id} episode {episode} already applied to bill {bill.id}"
            )

        amount = compute_fine_amount(fine_type, bill)
        if amount < MINIMUM_FINE:
            logger.debug("Fine for bill %d below minimum (%s), skipping", bill.id, amount)
            return None

        fine = AppliedFine(
            customer_id=bill.customer_id,
            bill_id=bill.id,
            fine_type_id=fine_type.id,
            amount=amount,
            amount_paid=ZERO,
            reason=f"{fine_type.fine_name}: bill {bill.bill_number} due {bill.due_date.isoformat()}",
            applied_date=as_of,
            episode=episode,
            status=FineStatus.PENDING.value,
        )
        self.db.add(fine)

        bill.fines_applied = to_money(bill.fines_applied) + amount
        bill.total_amount = to_money(bill.total_amount) + amount
        if bill.status in (BillStatus.PENDING.value, BillStatus.PARTIALLY_PAID.value):
            bill.status = BillStatus.OVERDUE.value
        self.db.flush()

        NotificationService.emit(
            self.db,
            NotificationEvent.FINE_APPLIED,
            bill.customer_id,
            bill_number=bill.bill_number,
            fine_name=fine_type.fine_name,
            amount=amount,
            balance=bill.balance,
        )
        return fine

    def apply_overdue_fines(
        self,
        as_of: date,
        cancel_event: threading.Event | None = None,
        settings: SettingsSnapshot | None = None,
    ) -> FineRunResult:
        """Fine every unpaid bill whose grace period ended before ``as_of``.

        Each (bill, fine type) pair is its own unit; an existing fine for the
        current episode is counted as skipped.
        """
        result = FineRunResult(as_of=as_of)
        if settings is None:
            settings = SettingsService(self.db).snapshot()

        work: list[tuple[int, FineType, int]] = []
        for fine_type in self._late_fine_types():
            grace = (
                fine_type.grace_period_days
                if fine_type.grace_period_days is not None
                else settings.late_fine_grace_days
            )
            cutoff = as_of - timedelta(days=grace)
            work.extend((bill_id, fine_type, grace) for bill_id in self._overdue_bill_ids(cutoff))
        self.db.rollback()

        for bill_id, fine_type, grace in work:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Fine run for %s cancelled", as_of)
                result.cancelled = True
                break

            result.bills_examined += 1
            try:
                with unit_of_work(self.db):
                    fine = self._fine_bill(bill_id, fine_type, grace, as_of, settings)
            except ConflictError:
                result.skipped += 1
                continue
            except BillingEngineError as e:
                result.errors.append(UnitError.from_exception(bill_id, e, unit_type="bill"))
                logger.warning("Fine failed for bill %d: %s", bill_id, e.message)
                continue
            except Exception as e:
                result.errors.append(UnitError.from_exception(bill_id, e, unit_type="bill"))
                logger.exception("Unexpected fine failure for bill %d", bill_id)
                continue

            if fine is None:
                result.skipped += 1
            else:
                result.applied += 1

        logger.info(
            "Fines as of %s: applied=%d examined=%d skipped=%d errors=%d",
            as_of,
            result.applied,
            result.bills_examined,
            result.skipped,
            len(result.errors),
        )
        return result

    def _fine_type(self, fine_type_id: int) -> FineType:
        fine_type = self.db.get(FineType, fine_type_id)
        if fine_type is None:
            raise NotFoundError(f"Fine type {fine_type_id} not found", code="fine_type_not_found")
        return fine_type

    def _next_episode(self, bill_id: int, fine_type_id: int) -> int:
        latest = self.db.execute(
            select(func.max(AppliedFine.episode)).where(
                AppliedFine.bill_id == bill_id,
                AppliedFine.fine_type_id == fine_type_id,
            )
        ).scalar_one()
        return (latest or 0) + 1

    def apply_manual_fine(
        self,
        customer_id: int,
        fine_type_id: int,
        reason: str,
        applied_date: date,
        amount: Decimal | None = None,
        bill_id: int | None = None,
        actor: str = "admin",
    ) -> AppliedFine:
        """Charge a fine by hand (reconnection, meter tampering, ...).

        Args:
            customer_id: Customer to fine
            fine_type_id: Catalog entry; any category, active or not
            reason: Free text shown on the customer's statement
            applied_date: Date the fine counts from for allocation order
            amount: Override; defaults to the fine type's amount (percentage
                types need ``bill_id`` to compute from)
            bill_id: Attach to this open bill of the same customer
            actor: Recorded in the audit log

        Returns:
            The committed AppliedFine

        Raises:
            NotFoundError: Unknown customer, fine type or bill
            ValidationError: Amount not positive, bill closed or of another customer
        """
        with unit_of_work(self.db):
            customer = self.db.get(Customer, customer_id)
            if customer is None:
                raise NotFoundError(f"Customer {customer_id} not found", code="customer_not_found")
            fine_type = self._fine_type(fine_type_id)

            bill = None
            if bill_id is not None:
                bill = self.db.execute(
                    select(Bill).where(Bill.id == bill_id).with_for_update()
                ).scalar_one_or_none()
                if bill is None:
                    raise NotFoundError(f"Bill {bill_id} not found", code="bill_not_found")
                if bill.customer_id != customer.id:
                    raise ValidationError(
                        f"Bill {bill_id} belongs to another customer", code="bill_customer_mismatch"
                    )
                if bill.status == BillStatus.PAID.value:
                    raise ValidationError(f"Bill {bill_id} is already paid", code="bill_closed")

            if amount is None:
                if fine_type.is_percentage and bill is None:
                    raise ValidationError(
                        "Percentage fines need a bill or an explicit amount", code="invalid_amount"
                    )
                amount = (
                    compute_fine_amount(fine_type, bill) if bill is not None else to_money(fine_type.amount)
                )
            amount = to_money(amount)
            if amount <= 0:
                raise ValidationError(f"Fine amount must be positive, got {amount}", code="invalid_amount")

            fine = AppliedFine(
                customer_id=customer.id,
                bill_id=bill.id if bill is not None else None,
                fine_type_id=fine_type.id,
                amount=amount,
                amount_paid=ZERO,
                reason=reason,
                applied_date=applied_date,
                episode=self._next_episode(bill.id, fine_type.id) if bill is not None else 1,
                status=FineStatus.PENDING.value,
            )
            self.db.add(fine)
            if bill is not None:
                bill.fines_applied = to_money(bill.fines_applied) + amount
                bill.total_amount = to_money(bill.total_amount) + amount
            self.db.flush()

            NotificationService.emit(
                self.db,
                NotificationEvent.FINE_APPLIED,
                customer.id,
                bill_number=bill.bill_number if bill is not None else None,
                fine_name=fine_type.fine_name,
                amount=amount,
                reason=reason,
            )
            AuditService.log(
                self.db,
                entity_type="fine",
                entity_id=fine.id,
                action="apply",
                actor=actor,
                changes={"amount": f"{amount:.2f}", "fine_type": fine_type.fine_type, "bill_id": fine.bill_id},
            )

        logger.info("Manual fine %d of %s applied to customer %d", fine.id, amount, customer_id)
        return fine

    def waive(self, fine_id: int, reason: str, actor: str = "admin") -> AppliedFine:
        """Waive what is still owed on a pending fine.

        Money already paid towards the fine stays applied. The waived
        remainder is taken off the attached bill, which may leave the bill
        fully paid.

        Raises:
            NotFoundError: Unknown fine
            ValidationError: Fine is not pending
        """
        now = datetime.now(timezone.utc)
        with unit_of_work(self.db):
            fine = self.db.execute(
                select(AppliedFine).where(AppliedFine.id == fine_id).with_for_update()
            ).scalar_one_or_none()
            if fine is None:
                raise NotFoundError(f"Fine {fine_id} not found", code="fine_not_found")
            if fine.status != FineStatus.PENDING.value:
                raise ValidationError(f"Fine {fine_id} is {fine.status}", code="fine_not_pending")

            waived = to_money(fine.outstanding)
            fine.status = FineStatus.WAIVED.value
            if fine.bill_id is not None:
                bill = self.db.execute(
                    select(Bill).where(Bill.id == fine.bill_id).with_for_update()
                ).scalar_one()
                bill.fines_applied = to_money(bill.fines_applied) - waived
                bill.total_amount = to_money(bill.total_amount) - waived
                bill.refresh_status(paid_at=now)

            AuditService.log(
                self.db,
                entity_type="fine",
                entity_id=fine.id,
                action="waive",
                actor=actor,
                changes={"waived": f"{waived:.2f}", "reason": reason},
            )

        logger.info("Fine %d waived (%s) by %s", fine_id, waived, actor)
        return fine


__all__ = ["FineService", "FineRunResult", "fine_episode", "compute_fine_amount"]
