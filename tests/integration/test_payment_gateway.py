"""Integration tests for payment intake and settlement."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from src.models.audit_log import AuditLog
from src.models.bill import Bill, BillStatus
from src.models.contribution import Contribution, ContributionStatus
from src.models.customer import Customer
from src.models.fine import AppliedFine, FineStatus
from src.models.notification_request import NotificationEvent, NotificationRequest
from src.models.payment import AllocationType, Payment, PaymentAllocation, PaymentStatus
from src.services.allocation_service import AllocationService
from src.services.errors import AllocationInvariantError, ValidationError
from src.services.payment_service import ACK_ACCEPTED, ACK_INVALID, PaymentIntakeGateway

RECEIVED_AT = datetime(2024, 3, 5, 7, 30, tzinfo=timezone.utc)


def callback(transaction_id="EQ1001", account="NyWs-001", amount="200.00", **extra):
    body = {
        "transaction_id": transaction_id,
        "member_number": account,
        "amount": amount,
        "payment_method": "M-Pesa",
        "timestamp": "2024-03-05T10:30:00+03:00",
    }
    body.update(extra)
    return body


class FailingAllocator(AllocationService):
    def allocate(self, customer_id, amount, context):
        raise AllocationInvariantError("plan does not balance")


@pytest.fixture
def gateway(session_factory):
    return PaymentIntakeGateway(session_factory, clock=lambda: RECEIVED_AT)


def _allocations(db, payment_id):
    return list(
        db.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment_id)
            .order_by(PaymentAllocation.id)
        ).scalars()
    )


class TestReceive:
    """Intake: normalize, deduplicate, record."""

    def test_new_payment_recorded_pending(self, gateway, factory, db_session):
        customer = factory.customer()

        ack = gateway.receive(callback())

        assert ack.success is True
        assert ack.code == ACK_ACCEPTED
        assert ack.transaction_id == "EQ1001"
        assert ack.received_at == RECEIVED_AT
        assert ack.needs_settlement is True
        assert ack.duplicate is False

        payment = db_session.get(Payment, ack.payment_id)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.customer_id == customer.id
        assert payment.amount == Decimal("200.00")
        assert payment.payment_method == "equity_mpesa"
        assert payment.raw_payload["payment_method"] == "M-Pesa"
        audit = db_session.execute(select(AuditLog).where(AuditLog.action == "receive")).scalar_one()
        assert audit.actor == "equity_callback"
        assert audit.entity_id == payment.id

    def test_account_lookup_ignores_case(self, gateway, factory, db_session):
        customer = factory.customer()

        ack = gateway.receive(callback(account=" nyws-001 "))

        assert db_session.get(Payment, ack.payment_id).customer_id == customer.id

    def test_unknown_account_stored_as_failed(self, gateway, factory, db_session):
        factory.customer()

        ack = gateway.receive(callback(account="NyWs-999"))

        assert ack.success is True
        assert ack.needs_settlement is False
        payment = db_session.get(Payment, ack.payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "unknown_account"
        assert payment.customer_id is None

    def test_bank_failure_stored_as_failed(self, gateway, factory, db_session):
        factory.customer()

        ack = gateway.receive(callback(transactionStatus="REVERSED"))

        assert ack.success is True
        payment = db_session.get(Payment, ack.payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "bank_status:reversed"

    def test_invalid_body_not_recorded(self, gateway, db_session):
        ack = gateway.receive({"transactionId": "EQ7", "member_number": "NyWs-001", "amount": "-1"})

        assert ack.success is False
        assert ack.code == ACK_INVALID
        assert ack.transaction_id == "EQ7"
        assert db_session.execute(select(func.count(Payment.id))).scalar_one() == 0

    def test_replay_returns_same_ack(self, gateway, factory, db_session):
        factory.customer()
        first = gateway.receive(callback())

        replay = PaymentIntakeGateway(
            gateway.session_factory, clock=lambda: datetime(2024, 3, 6, tzinfo=timezone.utc)
        ).receive(callback())

        assert replay.duplicate is True
        assert replay.to_response() == first.to_response()
        assert replay.payment_id == first.payment_id
        assert db_session.execute(select(func.count(Payment.id))).scalar_one() == 1

    def test_concurrent_delivery_falls_back_to_replay(self, gateway, factory, db_session, monkeypatch):
        factory.customer()
        first = gateway.receive(callback())
        racing = PaymentIntakeGateway(gateway.session_factory, clock=lambda: datetime(2024, 3, 6, tzinfo=timezone.utc))
        lookups = []

        def find_payment(db, transaction_id):
            lookups.append(transaction_id)
            # The first lookup runs before the other delivery committed
            if len(lookups) == 1:
                return None
            return PaymentIntakeGateway._find_payment(db, transaction_id)

        monkeypatch.setattr(racing, "_find_payment", find_payment)

        replay = racing.receive(callback())

        assert lookups == ["EQ1001", "EQ1001"]
        assert replay.duplicate is True
        assert replay.to_response() == first.to_response()
        assert db_session.execute(select(func.count(Payment.id))).scalar_one() == 1


class TestSettle:
    """Settlement allocates one payment in one transaction."""

    def test_bill_with_fine_scenario(self, gateway, factory, db_session):
        """200 against bill 300 + fine 50: fine paid, bill owes 150."""
        customer = factory.customer()
        bill = factory.bill(customer)
        fine = factory.fine(customer, factory.fine_type(), bill=bill)

        ack = gateway.receive(callback())
        outcome = gateway.settle(ack.payment_id)

        assert outcome.settled is True
        assert outcome.allocated == Decimal("200.00")
        assert outcome.advance == Decimal("0.00")
        assert outcome.allocation_count == 2

        db_session.expire_all()
        bill = db_session.get(Bill, bill.id)
        fine = db_session.get(AppliedFine, fine.id)
        assert fine.status == FineStatus.PAID.value
        assert bill.amount_paid == Decimal("200.00")
        assert bill.balance == Decimal("150.00")
        assert bill.status == BillStatus.PARTIALLY_PAID.value

        allocations = _allocations(db_session, ack.payment_id)
        assert [(a.allocation_type, a.amount) for a in allocations] == [
            (AllocationType.FINE.value, Decimal("50.00")),
            (AllocationType.BILL_PAYMENT.value, Decimal("150.00")),
        ]
        assert allocations[0].applied_fine_id == fine.id
        assert allocations[0].bill_id == bill.id

        payment = db_session.get(Payment, ack.payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.completed_at is not None

    def test_no_debt_becomes_advance_credit(self, gateway, factory, db_session):
        customer = factory.customer()

        ack = gateway.receive(callback(amount="300.00"))
        outcome = gateway.settle(ack.payment_id)

        assert outcome.advance == Decimal("300.00")
        db_session.expire_all()
        assert db_session.get(Customer, customer.id).credit_balance == Decimal("300.00")
        (allocation,) = _allocations(db_session, ack.payment_id)
        assert allocation.allocation_type == AllocationType.ADVANCE.value

    def test_overpayment_clears_everything(self, gateway, factory, db_session):
        customer = factory.customer()
        bill = factory.bill(customer)
        contribution = factory.contribution(customer, status=ContributionStatus.OVERDUE.value)

        ack = gateway.receive(callback(amount="450.00"))
        gateway.settle(ack.payment_id)

        db_session.expire_all()
        assert db_session.get(Bill, bill.id).status == BillStatus.PAID.value
        contribution = db_session.get(Contribution, contribution.id)
        assert contribution.status == ContributionStatus.COMPLETED.value
        assert contribution.completed_at is not None
        assert db_session.get(Customer, customer.id).credit_balance == Decimal("50.00")

    def test_partial_contribution_payment(self, gateway, factory, db_session):
        customer = factory.customer()
        contribution = factory.contribution(customer)

        ack = gateway.receive(callback(amount="40.00"))
        gateway.settle(ack.payment_id)

        db_session.expire_all()
        contribution = db_session.get(Contribution, contribution.id)
        assert contribution.status == ContributionStatus.PARTIAL.value
        assert contribution.outstanding == Decimal("60.00")

    def test_oldest_bill_paid_first(self, gateway, factory, db_session):
        customer = factory.customer()
        newer = factory.bill(customer, billing_period_start=date(2024, 2, 1))
        older = factory.bill(customer, billing_period_start=date(2024, 1, 1))

        ack = gateway.receive(callback(amount="350.00"))
        gateway.settle(ack.payment_id)

        db_session.expire_all()
        assert db_session.get(Bill, older.id).status == BillStatus.PAID.value
        assert db_session.get(Bill, newer.id).balance == Decimal("250.00")

    def test_replay_after_settlement_does_not_reallocate(self, gateway, factory, db_session):
        customer = factory.customer()
        factory.bill(customer)

        first = gateway.receive(callback())
        gateway.settle(first.payment_id)
        replay = gateway.receive(callback())
        again = gateway.settle(replay.payment_id)

        assert replay.to_response() == first.to_response()
        assert replay.needs_settlement is False
        assert again.settled is False
        assert again.status == PaymentStatus.COMPLETED.value
        assert len(_allocations(db_session, first.payment_id)) == 1
        db_session.expire_all()
        assert db_session.get(Customer, customer.id).credit_balance == Decimal("0.00")

    def test_failed_settlement_leaves_payment_pending(self, session_factory, factory, db_session):
        customer = factory.customer()
        bill = factory.bill(customer)
        gateway = PaymentIntakeGateway(session_factory, allocator=FailingAllocator(), clock=lambda: RECEIVED_AT)

        ack = gateway.receive(callback())
        outcome = gateway.settle(ack.payment_id)

        assert outcome.settled is False
        assert outcome.error.code == "allocation_invariant"
        assert outcome.error.unit_type == "payment"
        db_session.expire_all()
        assert db_session.get(Payment, ack.payment_id).status == PaymentStatus.PENDING.value
        assert db_session.get(Bill, bill.id).amount_paid == Decimal("0.00")
        assert _allocations(db_session, ack.payment_id) == []

    def test_settle_failed_payment_is_noop(self, gateway, factory, db_session):
        ack = gateway.receive(callback(account="NyWs-404"))

        outcome = gateway.settle(ack.payment_id)

        assert outcome.settled is False
        assert outcome.status == PaymentStatus.FAILED.value
        assert outcome.error is None

    def test_emits_payment_received_and_audit(self, gateway, factory, db_session):
        customer = factory.customer()
        factory.bill(customer)

        ack = gateway.receive(callback())
        gateway.settle(ack.payment_id)

        request = db_session.execute(
            select(NotificationRequest).where(
                NotificationRequest.event_type == NotificationEvent.PAYMENT_RECEIVED.value
            )
        ).scalar_one()
        assert request.payload["amount"] == "200.00"
        assert request.payload["outstanding_balance"] == "100.00"
        audit = db_session.execute(select(AuditLog).where(AuditLog.action == "settle")).scalar_one()
        assert audit.changes["amount"] == "200.00"
        assert len(audit.changes["lines"]) == 1


class TestReconcileAndValidate:
    def test_reconcile_settles_pending_payments(self, gateway, factory, db_session):
        customer = factory.customer()
        factory.bill(customer)
        gateway.receive(callback("EQ1"))
        gateway.receive(callback("EQ2", amount="100.00"))
        gateway.receive(callback("EQ3", account="NyWs-404"))

        result = gateway.reconcile_pending()

        assert result.examined == 2
        assert result.settled == 2
        assert result.errors == []
        statuses = db_session.execute(select(Payment.status).order_by(Payment.id)).scalars().all()
        assert statuses == ["completed", "completed", "failed"]

    def test_reconcile_continues_after_unexpected_failure(self, session_factory, factory, db_session):
        broken = factory.customer()
        healthy = factory.customer()

        class BrokenForOneCustomer(AllocationService):
            def allocate(self, customer_id, amount, context):
                if customer_id == broken.id:
                    raise OverflowError("amount out of range")
                return super().allocate(customer_id, amount, context)

        gateway = PaymentIntakeGateway(session_factory, allocator=BrokenForOneCustomer(), clock=lambda: RECEIVED_AT)
        gateway.receive(callback("EQ1", account=broken.account_number))
        gateway.receive(callback("EQ2", account=healthy.account_number))

        result = gateway.reconcile_pending()

        assert result.examined == 2
        assert result.settled == 1
        (error,) = result.errors
        assert error.code == "internal_error"
        assert error.unit_type == "payment"
        db_session.expire_all()
        statuses = db_session.execute(select(Payment.status).order_by(Payment.id)).scalars().all()
        assert statuses == ["pending", "completed"]

    def test_validate_customer(self, gateway, factory):
        customer = factory.customer(full_name="Mary Wanjiku")
        bill = factory.bill(customer)
        factory.fine(customer, factory.fine_type(), bill=bill)
        factory.contribution(customer)

        data = gateway.validate_customer("nyws-001")

        assert data == {
            "member_id": customer.id,
            "member_number": "NyWs-001",
            "name": "Mary Wanjiku",
            "customer_type": "individual",
            "status": "active",
            "outstanding_balance": "450.00",
            "balance_breakdown": {"bills": "300.00", "fines": "50.00", "contributions": "100.00"},
        }

    def test_validate_unknown_and_inactive(self, gateway, factory):
        factory.customer(is_active=False)

        assert gateway.validate_customer("NyWs-404") is None
        assert gateway.validate_customer("NyWs-001")["status"] == "inactive"

    def test_validate_requires_member_number(self, gateway):
        with pytest.raises(ValidationError):
            gateway.validate_customer("  ")
