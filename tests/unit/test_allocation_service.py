"""Unit tests for the allocation engine."""

from datetime import date
from decimal import Decimal

import pytest

from src.models.payment import AllocationType
from src.services.allocation_service import (
    AllocationLine,
    AllocationPlan,
    AllocationService,
    ObligationSnapshot,
    OpenBill,
    OpenContribution,
    OpenFine,
)
from src.services.errors import AllocationInvariantError, ValidationError

D = Decimal


class TestAllocationService:
    """Test ordering policy and plan invariants."""

    @pytest.fixture
    def service(self):
        """Create allocation service instance."""
        return AllocationService()

    @pytest.fixture
    def mixed_debt(self):
        """Two bills, one fine on the older bill, one loose fine, one contribution."""
        return ObligationSnapshot(
            customer_id=1,
            fines=(
                OpenFine(fine_id=10, applied_date=date(2024, 2, 12), outstanding=D("50.00"), bill_id=100),
                OpenFine(fine_id=11, applied_date=date(2024, 3, 1), outstanding=D("20.00")),
            ),
            bills=(
                OpenBill(bill_id=101, due_date=date(2024, 3, 6), outstanding=D("300.00")),
                OpenBill(bill_id=100, due_date=date(2024, 2, 6), outstanding=D("300.00")),
            ),
            contributions=(
                OpenContribution(
                    contribution_id=7, contribution_month=date(2024, 2, 1), outstanding=D("100.00")
                ),
            ),
        )

    def test_bill_with_fine_partial_payment(self, service):
        """Payment 200 against bill 300 + fine 50 pays the fine then 150 of the bill."""
        context = ObligationSnapshot(
            customer_id=1,
            fines=(OpenFine(fine_id=5, applied_date=date(2024, 1, 12), outstanding=D("50.00"), bill_id=9),),
            bills=(OpenBill(bill_id=9, due_date=date(2024, 1, 6), outstanding=D("300.00")),),
        )

        plan = service.allocate(1, D("200.00"), context)

        assert [(line.allocation_type, line.target_id, line.amount) for line in plan.lines] == [
            (AllocationType.FINE, 5, D("50.00")),
            (AllocationType.BILL_PAYMENT, 9, D("150.00")),
        ]
        assert plan.advance == D("0.00")
        assert plan.lines[1].remaining_after == D("150.00")

    def test_no_debt_becomes_single_advance(self, service):
        plan = service.allocate(1, D("300.00"), ObligationSnapshot(customer_id=1))

        assert len(plan.lines) == 1
        assert plan.lines[0].allocation_type == AllocationType.ADVANCE
        assert plan.lines[0].amount == D("300.00")
        assert plan.allocated == D("0.00")

    def test_ordering_policy(self, service, mixed_debt):
        """Loose fines, then bills oldest first with their own fines, then contributions."""
        plan = service.allocate(1, D("1000.00"), mixed_debt)

        assert [(line.allocation_type, line.target_id) for line in plan.lines] == [
            (AllocationType.FINE, 11),
            (AllocationType.FINE, 10),
            (AllocationType.BILL_PAYMENT, 100),
            (AllocationType.BILL_PAYMENT, 101),
            (AllocationType.CONTRIBUTION, 7),
            (AllocationType.ADVANCE, None),
        ]
        assert plan.advance == D("230.00")

    def test_amount_below_debt_has_no_advance(self, service, mixed_debt):
        plan = service.allocate(1, D("400.00"), mixed_debt)

        assert plan.advance == D("0.00")
        assert sum(line.amount for line in plan.lines) == D("400.00")
        assert plan.lines_of(AllocationType.CONTRIBUTION) == []
        # 20 + 50 + 300 leaves 30 for the newer bill
        assert plan.lines_of(AllocationType.BILL_PAYMENT)[-1].amount == D("30.00")

    def test_amount_equal_to_debt_has_no_advance(self, service, mixed_debt):
        plan = service.allocate(1, mixed_debt.total_outstanding, mixed_debt)

        assert plan.advance == D("0.00")
        assert plan.allocated == D("770.00")

    def test_amount_above_debt_advance_is_excess(self, service, mixed_debt):
        plan = service.allocate(1, D("800.01"), mixed_debt)

        assert plan.advance == D("30.01")
        assert plan.allocated == mixed_debt.total_outstanding

    def test_no_target_receives_more_than_it_owes(self, service, mixed_debt):
        plan = service.allocate(1, D("5000.00"), mixed_debt)

        owed = {("fine", f.fine_id): f.outstanding for f in mixed_debt.fines}
        owed.update({("bill_payment", b.bill_id): b.outstanding for b in mixed_debt.bills})
        owed.update({("contribution", c.contribution_id): c.outstanding for c in mixed_debt.contributions})
        for line in plan.lines:
            if line.allocation_type != AllocationType.ADVANCE:
                assert line.amount <= owed[(line.allocation_type.value, line.target_id)]

    def test_fine_on_paid_bill_is_treated_as_loose(self, service):
        """A pending fine whose bill is no longer open is settled first."""
        context = ObligationSnapshot(
            customer_id=1,
            fines=(OpenFine(fine_id=3, applied_date=date(2024, 5, 1), outstanding=D("50.00"), bill_id=77),),
            bills=(OpenBill(bill_id=78, due_date=date(2024, 4, 6), outstanding=D("300.00")),),
        )

        plan = service.allocate(1, D("60.00"), context)

        assert plan.lines[0].allocation_type == AllocationType.FINE
        assert plan.lines[0].bill_id == 77
        assert plan.lines[1].amount == D("10.00")

    def test_ties_broken_by_id(self, service):
        context = ObligationSnapshot(
            customer_id=1,
            bills=(
                OpenBill(bill_id=2, due_date=date(2024, 1, 6), outstanding=D("100.00")),
                OpenBill(bill_id=1, due_date=date(2024, 1, 6), outstanding=D("100.00")),
            ),
        )

        plan = service.allocate(1, D("100.00"), context)

        assert [line.target_id for line in plan.lines] == [1]

    @pytest.mark.parametrize("amount", ["0", "-5.00", "0.001", "10.005"])
    def test_invalid_amount_rejected(self, service, amount):
        with pytest.raises(ValidationError):
            service.allocate(1, D(amount), ObligationSnapshot(customer_id=1))

    def test_snapshot_for_other_customer_rejected(self, service):
        with pytest.raises(ValidationError):
            service.allocate(1, D("10.00"), ObligationSnapshot(customer_id=2))

    def test_verify_rejects_unbalanced_plan(self, service):
        plan = AllocationPlan(
            customer_id=1,
            amount=D("100.00"),
            lines=[AllocationLine(AllocationType.ADVANCE, None, D("90.00"))],
        )

        with pytest.raises(AllocationInvariantError, match="sums to"):
            service.verify(plan, ObligationSnapshot(customer_id=1))

    def test_verify_rejects_overallocation(self, service):
        context = ObligationSnapshot(
            customer_id=1,
            bills=(OpenBill(bill_id=1, due_date=date(2024, 1, 6), outstanding=D("50.00")),),
        )
        plan = AllocationPlan(
            customer_id=1,
            amount=D("60.00"),
            lines=[AllocationLine(AllocationType.BILL_PAYMENT, 1, D("60.00"), bill_id=1)],
        )

        with pytest.raises(AllocationInvariantError, match="exceeds"):
            service.verify(plan, context)

    def test_plan_as_dict_formats_money(self, service):
        plan = service.allocate(1, D("12.5"), ObligationSnapshot(customer_id=1))

        data = plan.as_dict()

        assert data["amount"] == "12.50"
        assert data["lines"][0] == {
            "type": "advance",
            "target_id": None,
            "bill_id": None,
            "amount": "12.50",
            "remaining_after": "0.00",
        }
