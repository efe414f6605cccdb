"""Bill ORM model for monthly flat-rate water bills."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class BillType(str, Enum):
    """How current charges were computed."""

    FLAT_RATE = "flat_rate"
    """Fixed monthly charge per customer type"""

    METERED = "metered"
    """Usage-based charge (not implemented yet)"""


class BillStatus(str, Enum):
    """Bill lifecycle states."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


OPEN_BILL_STATUSES = (BillStatus.PENDING, BillStatus.PARTIALLY_PAID, BillStatus.OVERDUE)


class Bill(Base, BaseModel):
    """
    One bill per customer per billing period.

    The billing period is half-open: ``[billing_period_start, billing_period_end)``.
    ``total_amount`` is the statement figure (previous balance + current charges +
    fines). The payable balance excludes ``previous_balance``, because that older
    debt stays on the older bills and fines that own it.
    """

    __tablename__ = "bills"

    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
        index=True,
    )
    bill_number: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
        comment="Deterministic bill number: BILL-YYYYMM-<zone>-<customer>",
    )

    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    previous_balance: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    current_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    fines_applied: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    credit_applied: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Advance credit consumed when the bill was generated",
    )
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Payments, fine settlements and credit applied to this bill",
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BillStatus.PENDING.value,
        index=True,
    )
    bill_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BillType.FLAT_RATE.value,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    customer: Mapped["Customer"] = relationship(  # noqa: F821
        "Customer",
        back_populates="bills",
        foreign_keys=[customer_id],
    )
    fines: Mapped[list["AppliedFine"]] = relationship(  # noqa: F821
        "AppliedFine",
        back_populates="bill",
    )

    __table_args__ = (
        UniqueConstraint("customer_id", "billing_period_start", name="uq_bill_customer_period"),
        Index("idx_bill_customer_status", "customer_id", "status"),
        Index("idx_bill_status_due", "status", "due_date"),
    )

    @property
    def amount_due(self) -> Decimal:
        """Payable amount of this bill (own charges plus its fines)."""
        return Decimal(self.current_charges) + Decimal(self.fines_applied)

    @property
    def balance(self) -> Decimal:
        """Amount still payable on this bill."""
        return max(self.amount_due - Decimal(self.amount_paid), Decimal("0.00"))

    def refresh_status(self, paid_at: datetime | None = None) -> None:
        """Recompute status after money was applied.

        Overdue bills stay overdue until fully paid.
        """
        if self.balance == 0:
            self.status = BillStatus.PAID.value
            self.paid_at = paid_at
        elif self.status != BillStatus.OVERDUE and Decimal(self.amount_paid) > 0:
            self.status = BillStatus.PARTIALLY_PAID.value

    def __repr__(self) -> str:
        return (
            f"<Bill(id={self.id}, bill_number={self.bill_number}, customer_id={self.customer_id}, "
            f"total_amount={self.total_amount}, status={self.status})>"
        )


__all__ = ["Bill", "BillStatus", "BillType", "OPEN_BILL_STATUSES"]
