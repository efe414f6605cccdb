"""Customer ORM model for metered water connections."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel
from src.services.errors import ValidationError

ACCOUNT_PREFIX = "NyWs-"


class Zone(str, Enum):
    """Supply zones. Each zone pads account numbers differently."""

    NYAKAHURA = "Nyakahura"
    G3 = "G3"
    GITHUNGURI = "Githunguri"


# Zero-padding width of the account sequence per zone
ZONE_ACCOUNT_PADDING = {
    Zone.NYAKAHURA: 2,
    Zone.G3: 3,
    Zone.GITHUNGURI: 4,
}

# Short codes used inside bill numbers
ZONE_CODES = {
    Zone.NYAKAHURA: "NYK",
    Zone.G3: "G3",
    Zone.GITHUNGURI: "GTH",
}


class CustomerType(str, Enum):
    """Customer classification; drives the flat rate."""

    INDIVIDUAL = "individual"
    INSTITUTION = "institution"


def parse_zone(value: str | None) -> Zone:
    """Resolve a stored zone string to a Zone.

    Raises:
        ValidationError: If the value is not one of the known zones
    """
    try:
        return Zone(value)
    except ValueError:
        raise ValidationError(
            f"Invalid zone {value!r}. Must be one of: {', '.join(z.value for z in Zone)}",
            code="invalid_zone",
        ) from None


def format_account_number(zone: str, sequence: int) -> str:
    """Format an account number for a zone, e.g. G3 + 7 -> "NyWs-007"."""
    if sequence < 1:
        raise ValidationError(f"Account sequence must be positive, got {sequence}")
    width = ZONE_ACCOUNT_PADDING[parse_zone(zone)]
    return f"{ACCOUNT_PREFIX}{sequence:0{width}d}"


class Customer(Base, BaseModel):
    """Model representing a billed customer.

    Customers are created by account management; the billing engine only
    reads them, except for ``credit_balance`` which holds advance payments
    waiting to be applied to the next bill.
    """

    __tablename__ = "customers"

    account_number: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        comment="Zone-formatted account number (e.g. NyWs-001)",
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Stored as plain string so a bad value cannot block loading the row
    zone: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=Zone.NYAKAHURA.value,
        comment="Supply zone: Nyakahura, G3 or Githunguri",
    )
    customer_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CustomerType.INDIVIDUAL.value,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    connection_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    credit_balance: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Advance credit not yet applied to a bill",
    )

    bills: Mapped[list["Bill"]] = relationship(  # noqa: F821
        "Bill",
        back_populates="customer",
    )

    __table_args__ = (
        Index("idx_customer_zone", "zone"),
        Index("idx_customer_active", "is_active"),
    )

    @property
    def zone_code(self) -> str:
        """Short zone code; raises ValidationError for malformed zones."""
        return ZONE_CODES[parse_zone(self.zone)]

    def __repr__(self) -> str:
        return (
            f"<Customer(id={self.id}, account_number={self.account_number}, "
            f"zone={self.zone}, is_active={self.is_active})>"
        )


__all__ = [
    "Customer",
    "CustomerType",
    "Zone",
    "ZONE_ACCOUNT_PADDING",
    "format_account_number",
    "parse_zone",
]
