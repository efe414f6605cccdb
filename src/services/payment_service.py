"""Payment intake gateway for bank payment callbacks.

Provides methods for:
- Receiving a callback: normalize, deduplicate, durably record as pending
- Settling a pending payment: allocate across open obligations in one transaction
- Reconciling payments left pending by a crash or a failed settlement
- Customer validation lookup used by the bank before it takes a payment
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from src.models.customer import Customer
from src.models.notification_request import NotificationEvent
from src.models.payment import Payment, PaymentAllocation, PaymentStatus
from src.services.allocation_service import AllocationService
from src.services.audit_service import AuditService
from src.services.db import unit_of_work
from src.services.errors import (
    BillingEngineError,
    ConflictError,
    UnitError,
    ValidationError,
)
from src.services.ledger_service import LedgerService
from src.services.notification_service import NotificationService
from src.services.payload_normalizer import FIELD_ALIASES, PaymentEvent, normalize_payment_event

logger = logging.getLogger(__name__)

ACK_ACCEPTED = "ACCEPTED"
ACK_INVALID = "INVALID"
ACK_ERROR = "ERROR"


def _as_utc(value: datetime | None) -> datetime:
    """Timestamps read back from SQLite are naive; they were stored as UTC."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class AckResult:
    """Acknowledgement returned to the bank.

    Only ``success``, ``code``, ``transaction_id`` and ``received_at`` are
    sent back; the rest is for the caller and the logs.
    """

    success: bool
    code: str
    transaction_id: str | None
    received_at: datetime
    payment_id: int | None = None
    needs_settlement: bool = False
    duplicate: bool = False

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code,
            "transaction_id": self.transaction_id,
            "received_at": self.received_at.isoformat(),
        }


@dataclass
class SettlementResult:
    """Outcome of settling one payment."""

    payment_id: int
    settled: bool
    status: str
    allocated: Decimal = Decimal("0.00")
    advance: Decimal = Decimal("0.00")
    allocation_count: int = 0
    error: UnitError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "settled": self.settled,
            "status": self.status,
            "allocated": f"{self.allocated:.2f}",
            "advance": f"{self.advance:.2f}",
            "allocation_count": self.allocation_count,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ReconciliationResult:
    examined: int = 0
    settled: int = 0
    errors: list[UnitError] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "settled": self.settled,
            "cancelled": self.cancelled,
            "errors": [error.to_dict() for error in self.errors],
        }


class PaymentIntakeGateway:
    """Exactly-once intake and settlement of bank payment events.

    ``receive`` and ``settle`` each open their own session from the factory,
    so the gateway can be shared between request handlers, background tasks
    and scheduled jobs.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        allocator: AllocationService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize gateway.

        Args:
            session_factory: Factory for database sessions
            allocator: Allocation engine (default AllocationService())
            clock: Returns the current UTC time (overridable in tests)
        """
        self.session_factory = session_factory
        self.allocator = allocator or AllocationService()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # Intake

    def receive(self, raw_event: Mapping[str, Any]) -> AckResult:
        """Record a payment event and acknowledge it.

        The acknowledgement is only produced after the payment row is
        committed (as pending, or failed for unknown accounts and bank-side
        failures). Allocation happens later in ``settle``.
        """
        received_at = self.clock()
        try:
            event = normalize_payment_event(raw_event)
        except ValidationError as e:
            logger.warning("Rejected payment callback (%s): %s", e.code, e.message)
            return AckResult(
                success=False,
                code=ACK_INVALID,
                transaction_id=self._raw_transaction_id(raw_event),
                received_at=received_at,
            )

        with self.session_factory() as db:
            existing = self._find_payment(db, event.transaction_id)
            if existing is not None:
                return self._replay_ack(existing)

            try:
                with unit_of_work(db):
                    payment = self._record(db, event, raw_event)
            except ConflictError:
                # Lost an insert race with a concurrent delivery of the same event
                existing = self._find_payment(db, event.transaction_id)
                if existing is None:
                    logger.error("Conflict recording %s but no payment found", event.transaction_id)
                    return AckResult(False, ACK_ERROR, event.transaction_id, received_at)
                return self._replay_ack(existing)
            except BillingEngineError as e:
                logger.error("Failed to record payment %s: %s", event.transaction_id, e.message)
                return AckResult(False, ACK_ERROR, event.transaction_id, received_at)

            logger.info(
                "Payment %s recorded: account=%s amount=%s method=%s status=%s",
                payment.transaction_id,
                payment.member_number,
                payment.amount,
                payment.payment_method,
                payment.status,
            )
            return AckResult(
                success=True,
                code=ACK_ACCEPTED,
                transaction_id=payment.transaction_id,
                received_at=_as_utc(payment.created_at),
                payment_id=payment.id,
                needs_settlement=payment.status == PaymentStatus.PENDING.value,
            )

    def _record(self, db: Session, event: PaymentEvent, raw_event: Mapping[str, Any]) -> Payment:
        customer = LedgerService(db).find_customer_by_account(event.member_number)

        status = PaymentStatus.PENDING
        failure_reason = None
        if event.is_failed_at_bank:
            status = PaymentStatus.FAILED
            failure_reason = f"bank_status:{event.bank_status}"
        elif customer is None:
            status = PaymentStatus.FAILED
            failure_reason = "unknown_account"

        payment = Payment(
            transaction_id=event.transaction_id,
            customer_id=customer.id if customer else None,
            member_number=event.member_number,
            amount=event.amount,
            payment_method=event.payment_method.value,
            payment_date=event.payment_date,
            status=status.value,
            failure_reason=failure_reason,
            raw_payload=dict(raw_event),
            notes=event.narrative,
            created_at=self.clock(),
        )
        db.add(payment)
        db.flush()

        AuditService.log(
            db,
            entity_type="payment",
            entity_id=payment.id,
            action="receive",
            actor="equity_callback",
            changes={"status": payment.status, "failure_reason": failure_reason},
        )
        if failure_reason:
            logger.warning("Payment %s stored as failed: %s", event.transaction_id, failure_reason)
        return payment

    def _replay_ack(self, payment: Payment) -> AckResult:
        logger.info(
            "Duplicate delivery of payment %s (status=%s)", payment.transaction_id, payment.status
        )
        return AckResult(
            success=True,
            code=ACK_ACCEPTED,
            transaction_id=payment.transaction_id,
            received_at=_as_utc(payment.created_at),
            payment_id=payment.id,
            needs_settlement=payment.status == PaymentStatus.PENDING.value,
            duplicate=True,
        )

    @staticmethod
    def _find_payment(db: Session, transaction_id: str) -> Payment | None:
        return db.execute(
            select(Payment).where(Payment.transaction_id == transaction_id)
        ).scalar_one_or_none()

    @staticmethod
    def _raw_transaction_id(raw_event: Any) -> str | None:
        if not isinstance(raw_event, Mapping):
            return None
        for alias in FIELD_ALIASES["transaction_id"]:
            if raw_event.get(alias):
                return str(raw_event[alias])
        return None

    # Settlement

    def settle(self, payment_id: int) -> SettlementResult:
        """Allocate a pending payment in a single transaction.

        Locks the payment and the customer's open obligations, plans the
        allocation, writes it and marks the payment completed. On any error
        the whole unit rolls back and the payment stays pending.
        """
        with self.session_factory() as db:
            try:
                with unit_of_work(db):
                    return self._settle(db, payment_id)
            except BillingEngineError as e:
                logger.error("Settlement of payment %d failed (%s): %s", payment_id, e.code, e.message)
                return self._unsettled(payment_id, e)
            except Exception as e:
                logger.exception("Unexpected failure settling payment %d", payment_id)
                return self._unsettled(payment_id, e)

    @staticmethod
    def _unsettled(payment_id: int, exc: Exception) -> SettlementResult:
        return SettlementResult(
            payment_id=payment_id,
            settled=False,
            status=PaymentStatus.PENDING.value,
            error=UnitError.from_exception(payment_id, exc, unit_type="payment"),
        )

    def _settle(self, db: Session, payment_id: int) -> SettlementResult:
        payment = db.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        ).scalar_one_or_none()
        if payment is None:
            raise ValidationError(f"Payment {payment_id} not found", code="payment_not_found")

        if payment.status != PaymentStatus.PENDING.value:
            logger.debug("Payment %d already %s, nothing to settle", payment_id, payment.status)
            return SettlementResult(payment_id=payment_id, settled=False, status=payment.status)

        allocation_count = db.execute(
            select(func.count(PaymentAllocation.id)).where(PaymentAllocation.payment_id == payment_id)
        ).scalar_one()
        if allocation_count:
            raise ConflictError(f"Payment {payment_id} is pending but already has allocations")

        if payment.customer_id is None:
            raise ValidationError(f"Payment {payment_id} has no customer", code="unknown_account")

        now = self.clock()
        ledger = LedgerService(db)
        snapshot = ledger.load_obligations(payment.customer_id, lock=True)
        plan = self.allocator.allocate(payment.customer_id, Decimal(payment.amount), snapshot)
        allocations = ledger.apply_plan(payment, plan, now)

        payment.status = PaymentStatus.COMPLETED.value
        payment.completed_at = now
        db.flush()

        customer = db.get(Customer, payment.customer_id)
        remaining = ledger.outstanding_breakdown(payment.customer_id)
        NotificationService.emit(
            db,
            NotificationEvent.PAYMENT_RECEIVED,
            payment.customer_id,
            customer_name=customer.full_name if customer else None,
            transaction_id=payment.transaction_id,
            amount=Decimal(payment.amount),
            allocated=plan.allocated,
            advance=plan.advance,
            outstanding_balance=remaining["total"],
        )
        AuditService.log(
            db,
            entity_type="payment",
            entity_id=payment.id,
            action="settle",
            changes=plan.as_dict(),
        )
        logger.info(
            "Payment %s settled: allocated=%s advance=%s lines=%d",
            payment.transaction_id,
            plan.allocated,
            plan.advance,
            len(allocations),
        )
        return SettlementResult(
            payment_id=payment.id,
            settled=True,
            status=payment.status,
            allocated=plan.allocated,
            advance=plan.advance,
            allocation_count=len(allocations),
        )

    def reconcile_pending(
        self,
        limit: int = 100,
        cancel_event: threading.Event | None = None,
    ) -> ReconciliationResult:
        """Retry settlement for payments still pending."""
        result = ReconciliationResult()
        with self.session_factory() as db:
            payment_ids = list(
                db.execute(
                    select(Payment.id)
                    .where(
                        Payment.status == PaymentStatus.PENDING.value,
                        Payment.customer_id.is_not(None),
                    )
                    .order_by(Payment.id)
                    .limit(limit)
                ).scalars()
            )

        for payment_id in payment_ids:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            result.examined += 1
            outcome = self.settle(payment_id)
            if outcome.settled:
                result.settled += 1
            elif outcome.error is not None:
                result.errors.append(outcome.error)

        if payment_ids:
            logger.info(
                "Reconciliation: examined=%d settled=%d errors=%d",
                result.examined,
                result.settled,
                len(result.errors),
            )
        return result

    # Validation lookup

    def validate_customer(self, member_number: str) -> dict[str, Any] | None:
        """Account details and outstanding balance for the bank's pre-payment check.

        Returns:
            Dict with customer details and balance breakdown, or None when the
            account does not exist. Inactive accounts return status "inactive".

        Raises:
            ValidationError: If no member number was supplied
        """
        if not member_number or not str(member_number).strip():
            raise ValidationError("Member number is required", code="missing_account")

        with self.session_factory() as db:
            ledger = LedgerService(db)
            customer = ledger.find_customer_by_account(str(member_number))
            if customer is None:
                logger.info("Validation lookup for unknown account %s", member_number)
                return None

            breakdown = ledger.outstanding_breakdown(customer.id)
            return {
                "member_id": customer.id,
                "member_number": customer.account_number,
                "name": customer.full_name,
                "customer_type": customer.customer_type,
                "status": "active" if customer.is_active else "inactive",
                "outstanding_balance": f"{breakdown['total']:.2f}",
                "balance_breakdown": {
                    key: f"{breakdown[key]:.2f}" for key in ("bills", "fines", "contributions")
                },
            }


__all__ = [
    "PaymentIntakeGateway",
    "AckResult",
    "SettlementResult",
    "ReconciliationResult",
    "ACK_ACCEPTED",
    "ACK_INVALID",
    "ACK_ERROR",
]
