"""Ledger reads and writes shared by the generators and the payment gateway.

Loads a customer's open obligations into the plain snapshot the allocation
engine works on, and applies an allocation plan back onto the rows.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.models.bill import OPEN_BILL_STATUSES, Bill
from src.models.contribution import OPEN_CONTRIBUTION_STATUSES, Contribution, ContributionStatus
from src.models.customer import Customer
from src.models.fine import AppliedFine, FineStatus
from src.models.payment import AllocationType, Payment, PaymentAllocation
from src.services.allocation_service import (
    ZERO,
    AllocationLine,
    AllocationPlan,
    AllocationService,
    ObligationSnapshot,
    OpenBill,
    OpenContribution,
    OpenFine,
    to_money,
)
from src.services.errors import AllocationInvariantError

logger = logging.getLogger(__name__)


def _status_values(statuses) -> list[str]:
    return [status.value for status in statuses]


class LedgerService:
    """Row-level ledger operations inside the caller's transaction.

    Nothing here commits; the caller owns the unit of work.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def find_customer_by_account(self, member_number: str) -> Customer | None:
        """Look up a customer by account number, ignoring case and surrounding spaces."""
        account = (member_number or "").strip()
        if not account:
            return None
        return self.db.execute(
            select(Customer).where(func.lower(Customer.account_number) == account.lower())
        ).scalar_one_or_none()

    def _open_bills(self, customer_id: int, lock: bool) -> list[Bill]:
        stmt = (
            select(Bill)
            .where(
                Bill.customer_id == customer_id,
                Bill.status.in_(_status_values(OPEN_BILL_STATUSES)),
            )
            .order_by(Bill.due_date, Bill.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars())

    def _pending_fines(self, customer_id: int, lock: bool) -> list[AppliedFine]:
        stmt = (
            select(AppliedFine)
            .where(
                AppliedFine.customer_id == customer_id,
                AppliedFine.status == FineStatus.PENDING.value,
            )
            .order_by(AppliedFine.applied_date, AppliedFine.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars())

    def _open_contributions(self, customer_id: int, lock: bool) -> list[Contribution]:
        stmt = (
            select(Contribution)
            .where(
                Contribution.customer_id == customer_id,
                Contribution.status.in_(_status_values(OPEN_CONTRIBUTION_STATUSES)),
            )
            .order_by(Contribution.contribution_month, Contribution.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars())

    def load_obligations(self, customer_id: int, lock: bool = False) -> ObligationSnapshot:
        """Snapshot everything the customer owes.

        A bill's outstanding principal excludes its own pending fines, which
        appear separately as OpenFine entries attached to the bill.

        Args:
            customer_id: Customer to load
            lock: Take row locks (SELECT ... FOR UPDATE) for a settlement

        Returns:
            ObligationSnapshot for the allocation engine
        """
        bills = self._open_bills(customer_id, lock)
        fines = self._pending_fines(customer_id, lock)
        contributions = self._open_contributions(customer_id, lock)

        fine_outstanding_by_bill: dict[int, Decimal] = {}
        open_fines = []
        for fine in fines:
            outstanding = to_money(fine.outstanding)
            if outstanding <= 0:
                continue
            open_fines.append(
                OpenFine(
                    fine_id=fine.id,
                    applied_date=fine.applied_date,
                    outstanding=outstanding,
                    bill_id=fine.bill_id,
                )
            )
            if fine.bill_id is not None:
                fine_outstanding_by_bill[fine.bill_id] = (
                    fine_outstanding_by_bill.get(fine.bill_id, ZERO) + outstanding
                )

        open_bills = []
        for bill in bills:
            principal = to_money(bill.balance) - fine_outstanding_by_bill.get(bill.id, ZERO)
            if principal <= 0 and bill.id not in fine_outstanding_by_bill:
                continue
            open_bills.append(
                OpenBill(bill_id=bill.id, due_date=bill.due_date, outstanding=max(principal, ZERO))
            )

        open_contributions = [
            OpenContribution(
                contribution_id=c.id,
                contribution_month=c.contribution_month,
                outstanding=to_money(c.outstanding),
            )
            for c in contributions
            if c.outstanding > 0
        ]

        return ObligationSnapshot(
            customer_id=customer_id,
            fines=tuple(open_fines),
            bills=tuple(open_bills),
            contributions=tuple(open_contributions),
        )

    def customer_unpaid_total(self, customer_id: int) -> Decimal:
        """Unpaid bills and fines (contributions excluded), for previous_balance."""
        snapshot = self.load_obligations(customer_id)
        return sum(
            (item.outstanding for item in (*snapshot.fines, *snapshot.bills)),
            ZERO,
        )

    def outstanding_breakdown(self, customer_id: int) -> dict[str, Decimal]:
        """Outstanding balance split by obligation kind."""
        snapshot = self.load_obligations(customer_id)
        bills = sum((b.outstanding for b in snapshot.bills), ZERO)
        fines = sum((f.outstanding for f in snapshot.fines), ZERO)
        contributions = sum((c.outstanding for c in snapshot.contributions), ZERO)
        return {
            "bills": bills,
            "fines": fines,
            "contributions": contributions,
            "total": bills + fines + contributions,
        }

    def apply_credit(self, customer: Customer, bill: Bill, now: datetime) -> Decimal:
        """Consume the customer's advance credit when a new bill is generated.

        The credit runs through the same allocation order as a payment, so
        older fines and bills are covered before ``bill``. Whatever is not
        needed stays on the customer.

        Returns:
            Amount of credit applied to ``bill`` itself
        """
        credit = to_money(customer.credit_balance or ZERO)
        if credit <= 0:
            return ZERO
        self.db.flush()
        snapshot = self.load_obligations(customer.id, lock=True)
        if snapshot.total_outstanding <= 0:
            return ZERO

        plan = AllocationService().allocate(customer.id, credit, snapshot)
        applied_to_bill = ZERO
        for line in plan.lines:
            if line.allocation_type == AllocationType.ADVANCE:
                continue
            target = self._apply_line(line, customer.id, now)
            if target["bill_id"] is not None:
                credited = self._require(Bill, target["bill_id"])
                credited.credit_applied = to_money(credited.credit_applied or ZERO) + line.amount
                if credited.id == bill.id:
                    applied_to_bill += line.amount

        customer.credit_balance = credit - plan.allocated
        logger.debug(
            "Applied credit %s for customer %d (%s to bill %s)",
            plan.allocated,
            customer.id,
            applied_to_bill,
            bill.bill_number,
        )
        return applied_to_bill

    def apply_plan(self, payment: Payment, plan: AllocationPlan, now: datetime) -> list[PaymentAllocation]:
        """Write allocation rows and update every target of the plan.

        Raises:
            AllocationInvariantError: If a target row vanished or the plan is
                for another customer
        """
        if payment.customer_id != plan.customer_id:
            raise AllocationInvariantError(
                f"Plan for customer {plan.customer_id} applied to payment of {payment.customer_id}"
            )

        allocations = []
        for line in plan.lines:
            allocation = PaymentAllocation(
                payment_id=payment.id,
                allocation_type=line.allocation_type.value,
                amount=line.amount,
                **self._apply_line(line, plan.customer_id, now),
            )
            self.db.add(allocation)
            allocations.append(allocation)

        return allocations

    def _apply_line(self, line: AllocationLine, customer_id: int, now: datetime) -> dict:
        """Move one plan line onto its target row.

        Returns:
            Allocation row fields naming the target (bill_id, applied_fine_id,
            contribution_id, notes)
        """
        target = {"bill_id": None, "applied_fine_id": None, "contribution_id": None, "notes": None}

        if line.allocation_type == AllocationType.FINE:
            fine = self._require(AppliedFine, line.target_id)
            fine.amount_paid = to_money(fine.amount_paid) + line.amount
            if fine.outstanding == 0:
                fine.status = FineStatus.PAID.value
            target.update(applied_fine_id=fine.id, bill_id=fine.bill_id, notes=f"Fine {fine.id}")
            if fine.bill_id is not None:
                bill = self._require(Bill, fine.bill_id)
                bill.amount_paid = to_money(bill.amount_paid) + line.amount
                bill.refresh_status(paid_at=now)

        elif line.allocation_type == AllocationType.BILL_PAYMENT:
            bill = self._require(Bill, line.target_id)
            bill.amount_paid = to_money(bill.amount_paid) + line.amount
            bill.refresh_status(paid_at=now)
            target.update(bill_id=bill.id, notes=f"Bill {bill.bill_number}")

        elif line.allocation_type == AllocationType.CONTRIBUTION:
            contribution = self._require(Contribution, line.target_id)
            contribution.amount_paid = to_money(contribution.amount_paid) + line.amount
            if contribution.outstanding == 0:
                contribution.status = ContributionStatus.COMPLETED.value
                contribution.completed_at = now
            elif contribution.status != ContributionStatus.OVERDUE.value:
                contribution.status = ContributionStatus.PARTIAL.value
            target.update(
                contribution_id=contribution.id,
                notes=f"Contribution {contribution.contribution_month:%Y-%m}",
            )

        else:
            customer = self._require(Customer, customer_id)
            customer.credit_balance = to_money(customer.credit_balance or ZERO) + line.amount
            target["notes"] = "Advance credit"

        return target

    def _require(self, model, row_id):
        row = self.db.get(model, row_id)
        if row is None:
            raise AllocationInvariantError(f"{model.__name__} {row_id} not found while applying plan")
        return row


__all__ = ["LedgerService"]
