"""Fine catalog and applied fine ORM models."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class FineCategory(str, Enum):
    """Kinds of fines in the catalog."""

    LATE_PAYMENT = "late_payment"
    RECONNECTION = "reconnection"
    METER_TAMPERING = "meter_tampering"
    OTHER = "other"


class FineStatus(str, Enum):
    """Applied fine states."""

    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


class FineType(Base, BaseModel):
    """Static catalog entry describing how a fine is computed."""

    __tablename__ = "fine_types"

    fine_name: Mapped[str] = mapped_column(String(100), nullable=False)
    fine_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=FineCategory.LATE_PAYMENT.value,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Fixed amount, or percentage of the bill charges when is_percentage",
    )
    is_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_period_days: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Days after due date before the fine applies; NULL uses late_fine_grace_days",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<FineType(id={self.id}, fine_name={self.fine_name}, amount={self.amount}, "
            f"is_percentage={self.is_percentage})>"
        )


class AppliedFine(Base, BaseModel):
    """A fine charged to a customer, optionally tied to the overdue bill.

    At most one fine per (bill, fine type, overdue episode).
    """

    __tablename__ = "applied_fines"

    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
        index=True,
    )
    bill_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        index=True,
    )
    fine_type_id: Mapped[int] = mapped_column(ForeignKey("fine_types.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    applied_date: Mapped[date] = mapped_column(Date, nullable=False)
    episode: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Overdue escalation number for this bill and fine type",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=FineStatus.PENDING.value,
    )

    bill: Mapped["Bill | None"] = relationship(  # noqa: F821
        "Bill",
        back_populates="fines",
        foreign_keys=[bill_id],
    )
    fine_type_ref: Mapped[FineType] = relationship("FineType", foreign_keys=[fine_type_id])

    __table_args__ = (
        UniqueConstraint("bill_id", "fine_type_id", "episode", name="uq_fine_bill_type_episode"),
        Index("idx_fine_customer_status", "customer_id", "status"),
    )

    @property
    def outstanding(self) -> Decimal:
        return max(Decimal(self.amount) - Decimal(self.amount_paid), Decimal("0.00"))

    def __repr__(self) -> str:
        return (
            f"<AppliedFine(id={self.id}, customer_id={self.customer_id}, bill_id={self.bill_id}, "
            f"amount={self.amount}, episode={self.episode}, status={self.status})>"
        )


__all__ = ["FineType", "FineCategory", "AppliedFine", "FineStatus"]
