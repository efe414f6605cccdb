"""Monthly member contribution ORM model."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class ContributionStatus(str, Enum):
    """Contribution lifecycle states."""

    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    OVERDUE = "overdue"


OPEN_CONTRIBUTION_STATUSES = (
    ContributionStatus.PENDING,
    ContributionStatus.PARTIAL,
    ContributionStatus.OVERDUE,
)


class Contribution(Base, BaseModel):
    """Contribution owed by a customer for one calendar month."""

    __tablename__ = "contributions"

    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
        index=True,
    )
    contribution_month: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="First day of the contribution month",
    )
    amount_required: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ContributionStatus.PENDING.value,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("customer_id", "contribution_month", name="uq_contribution_customer_month"),
        Index("idx_contribution_status_due", "status", "due_date"),
    )

    @property
    def outstanding(self) -> Decimal:
        return max(Decimal(self.amount_required) - Decimal(self.amount_paid), Decimal("0.00"))

    def __repr__(self) -> str:
        return (
            f"<Contribution(id={self.id}, customer_id={self.customer_id}, "
            f"month={self.contribution_month}, amount_paid={self.amount_paid}, status={self.status})>"
        )


__all__ = ["Contribution", "ContributionStatus", "OPEN_CONTRIBUTION_STATUSES"]
