"""Allocation engine for distributing a payment across a customer's open obligations.

Ordering policy (oldest debt first, smallest unit first):
1. Pending fines not attached to an open bill, by applied date
2. Open bills by due date; each bill's own pending fines are settled
   immediately before its principal
3. Open contributions by contribution month
4. Any remainder becomes advance credit for the next bill

The engine is pure: it works on an ObligationSnapshot of plain values and
returns a plan. Persisting the plan is the caller's job.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from src.models.payment import AllocationType
from src.services.errors import AllocationInvariantError, ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Convert to a Decimal rounded to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OpenFine:
    """A pending fine with money still owed."""

    fine_id: int
    applied_date: date
    outstanding: Decimal
    bill_id: int | None = None


@dataclass(frozen=True)
class OpenBill:
    """An unpaid bill. ``outstanding`` is the principal, excluding its own fines."""

    bill_id: int
    due_date: date
    outstanding: Decimal


@dataclass(frozen=True)
class OpenContribution:
    contribution_id: int
    contribution_month: date
    outstanding: Decimal


@dataclass(frozen=True)
class ObligationSnapshot:
    """Everything a customer owes at one instant."""

    customer_id: int
    fines: tuple[OpenFine, ...] = ()
    bills: tuple[OpenBill, ...] = ()
    contributions: tuple[OpenContribution, ...] = ()

    @property
    def total_outstanding(self) -> Decimal:
        return sum(
            (
                item.outstanding
                for group in (self.fines, self.bills, self.contributions)
                for item in group
            ),
            ZERO,
        )


@dataclass(frozen=True)
class AllocationLine:
    """One slice of the payment applied to one target.

    ``target_id`` is the fine, bill or contribution id (None for advance).
    ``bill_id`` is set for bill lines and for fines attached to a bill.
    """

    allocation_type: AllocationType
    target_id: int | None
    amount: Decimal
    bill_id: int | None = None
    remaining_after: Decimal = ZERO


@dataclass
class AllocationPlan:
    """Ordered allocation lines summing exactly to the payment amount."""

    customer_id: int
    amount: Decimal
    lines: list[AllocationLine] = field(default_factory=list)

    @property
    def allocated(self) -> Decimal:
        """Amount applied to debt (everything except advance)."""
        return sum(
            (line.amount for line in self.lines if line.allocation_type != AllocationType.ADVANCE),
            ZERO,
        )

    @property
    def advance(self) -> Decimal:
        return sum(
            (line.amount for line in self.lines if line.allocation_type == AllocationType.ADVANCE),
            ZERO,
        )

    def lines_of(self, allocation_type: AllocationType) -> list[AllocationLine]:
        return [line for line in self.lines if line.allocation_type == allocation_type]

    def as_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "amount": f"{self.amount:.2f}",
            "allocated": f"{self.allocated:.2f}",
            "advance": f"{self.advance:.2f}",
            "lines": [
                {
                    "type": line.allocation_type.value,
                    "target_id": line.target_id,
                    "bill_id": line.bill_id,
                    "amount": f"{line.amount:.2f}",
                    "remaining_after": f"{line.remaining_after:.2f}",
                }
                for line in self.lines
            ],
        }


class AllocationService:
    """Deterministic payment allocation engine."""

    def allocate(
        self,
        customer_id: int,
        amount: Decimal,
        context: ObligationSnapshot,
    ) -> AllocationPlan:
        """Plan how a payment settles a customer's obligations.

        Args:
            customer_id: Customer the payment belongs to
            amount: Positive payment amount (at least one cent)
            context: Snapshot of the customer's open fines, bills, contributions

        Returns:
            AllocationPlan whose lines sum exactly to ``amount``

        Raises:
            ValidationError: Amount not positive, or snapshot for another customer
            AllocationInvariantError: Plan failed its own balance checks
        """
        payment = Decimal(str(amount))
        if payment != payment.quantize(CENT) or payment < CENT:
            raise ValidationError(
                f"Payment amount must be a positive whole number of cents, got {amount}",
                code="invalid_amount",
            )
        if context.customer_id != customer_id:
            raise ValidationError(
                f"Obligations belong to customer {context.customer_id}, not {customer_id}"
            )

        plan = AllocationPlan(customer_id=customer_id, amount=payment)
        remaining = payment

        open_bill_ids = {bill.bill_id for bill in context.bills}
        fines_by_bill: dict[int, list[OpenFine]] = {}
        loose_fines: list[OpenFine] = []
        for fine in context.fines:
            if fine.bill_id is not None and fine.bill_id in open_bill_ids:
                fines_by_bill.setdefault(fine.bill_id, []).append(fine)
            else:
                loose_fines.append(fine)

        # 1. Fines not covered by an open bill
        for fine in self._by_date(loose_fines, lambda f: (f.applied_date, f.fine_id)):
            remaining = self._take(
                plan, remaining, AllocationType.FINE, fine.fine_id, fine.outstanding, fine.bill_id
            )

        # 2. Bills, each with its own fines first
        for bill in self._by_date(context.bills, lambda b: (b.due_date, b.bill_id)):
            own_fines = self._by_date(
                fines_by_bill.get(bill.bill_id, []), lambda f: (f.applied_date, f.fine_id)
            )
            for fine in own_fines:
                remaining = self._take(
                    plan, remaining, AllocationType.FINE, fine.fine_id, fine.outstanding, bill.bill_id
                )
            remaining = self._take(
                plan,
                remaining,
                AllocationType.BILL_PAYMENT,
                bill.bill_id,
                bill.outstanding,
                bill.bill_id,
            )

        # 3. Contributions
        for contribution in self._by_date(
            context.contributions, lambda c: (c.contribution_month, c.contribution_id)
        ):
            remaining = self._take(
                plan,
                remaining,
                AllocationType.CONTRIBUTION,
                contribution.contribution_id,
                contribution.outstanding,
            )

        # 4. Advance credit
        if remaining > 0:
            plan.lines.append(
                AllocationLine(allocation_type=AllocationType.ADVANCE, target_id=None, amount=remaining)
            )

        self.verify(plan, context)
        return plan

    def verify(self, plan: AllocationPlan, context: ObligationSnapshot) -> None:
        """Check plan invariants.

        Raises:
            AllocationInvariantError: If lines do not sum to the payment, a line is
                not positive, or a target receives more than it owes
        """
        total = sum((line.amount for line in plan.lines), ZERO)
        if total != plan.amount:
            raise AllocationInvariantError(
                f"Plan sums to {total}, payment is {plan.amount}"
            )

        limits: dict[tuple[AllocationType, int], Decimal] = {}
        for fine in context.fines:
            limits[(AllocationType.FINE, fine.fine_id)] = to_money(fine.outstanding)
        for bill in context.bills:
            limits[(AllocationType.BILL_PAYMENT, bill.bill_id)] = to_money(bill.outstanding)
        for contribution in context.contributions:
            limits[(AllocationType.CONTRIBUTION, contribution.contribution_id)] = to_money(
                contribution.outstanding
            )

        for line in plan.lines:
            if line.amount <= 0:
                raise AllocationInvariantError(f"Non-positive allocation line: {line}")
            if line.allocation_type == AllocationType.ADVANCE:
                if plan.allocated < context.total_outstanding:
                    raise AllocationInvariantError("Advance credit while debt remains")
                continue
            key = (line.allocation_type, line.target_id)
            if key not in limits:
                raise AllocationInvariantError(f"Allocation to unknown target: {line}")
            limits[key] -= line.amount
            if limits[key] < 0:
                raise AllocationInvariantError(f"Allocation exceeds balance of target: {line}")

    @staticmethod
    def _by_date(items: Iterable, key) -> list:
        return sorted(items, key=key)

    @staticmethod
    def _take(
        plan: AllocationPlan,
        remaining: Decimal,
        allocation_type: AllocationType,
        target_id: int,
        outstanding: Decimal,
        bill_id: int | None = None,
    ) -> Decimal:
        """Append min(outstanding, remaining) to the plan; return what is left."""
        balance = to_money(outstanding)
        if remaining <= 0 or balance <= 0:
            return remaining
        amount = min(balance, remaining)
        plan.lines.append(
            AllocationLine(
                allocation_type=allocation_type,
                target_id=target_id,
                amount=amount,
                bill_id=bill_id,
                remaining_after=balance - amount,
            )
        )
        return remaining - amount


__all__ = [
    "AllocationService",
    "AllocationPlan",
    "AllocationLine",
    "ObligationSnapshot",
    "OpenBill",
    "OpenFine",
    "OpenContribution",
    "to_money",
]
