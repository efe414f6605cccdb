"""Payment and payment allocation ORM models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class PaymentMethod(str, Enum):
    """Equity Bank collection channels."""

    BRANCH = "equity_branch"
    AGENT = "equity_agent"
    EQUITEL = "equity_equitel"
    MPESA = "equity_mpesa"
    USSD = "equity_ussd"
    APP = "equity_app"


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class AllocationType(str, Enum):
    """What a slice of a payment was applied to."""

    BILL_PAYMENT = "bill_payment"
    FINE = "fine"
    CONTRIBUTION = "contribution"
    ADVANCE = "advance"


class Payment(Base, BaseModel):
    """Canonical record of money received from the bank.

    ``transaction_id`` is unique, which makes intake exactly-once. A completed
    payment is immutable apart from the manual ``reversed`` transition.
    """

    __tablename__ = "payments"

    transaction_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Bank transaction reference",
    )
    customer_id: Mapped[int | None] = mapped_column(
        ForeignKey("customers.id"),
        nullable=True,
        index=True,
        comment="Resolved customer; NULL when the account number is unknown",
    )
    member_number: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="Account number quoted by the payer",
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        index=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Callback body exactly as received, for audit",
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.id",
    )

    __table_args__ = (
        Index("idx_payment_customer_date", "customer_id", "payment_date"),
        Index("idx_payment_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, transaction_id={self.transaction_id}, "
            f"customer_id={self.customer_id}, amount={self.amount}, status={self.status})>"
        )


class PaymentAllocation(Base, BaseModel):
    """A slice of a payment applied to one bill, fine, contribution or advance credit.

    Written only by the payment settlement transaction.
    """

    __tablename__ = "payment_allocations"

    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
    )
    bill_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        index=True,
    )
    applied_fine_id: Mapped[int | None] = mapped_column(
        ForeignKey("applied_fines.id"),
        nullable=True,
    )
    contribution_id: Mapped[int | None] = mapped_column(
        ForeignKey("contributions.id"),
        nullable=True,
    )
    allocation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment: Mapped[Payment] = relationship(
        "Payment",
        back_populates="allocations",
        foreign_keys=[payment_id],
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.allocation_type}, amount={self.amount})>"
        )


__all__ = ["Payment", "PaymentAllocation", "PaymentMethod", "PaymentStatus", "AllocationType"]
