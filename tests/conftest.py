"""Pytest configuration: in-memory database fixtures and ledger row factory."""

import os
from datetime import date
from decimal import Decimal

# Required by AppConfig.validate() for code paths that fall back to get_config()
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from src.config import AppConfig  # noqa: E402
from src.models import Base  # noqa: E402
from src.models.bill import Bill, BillStatus, BillType  # noqa: E402
from src.models.contribution import Contribution, ContributionStatus  # noqa: E402
from src.models.customer import Customer, CustomerType, Zone  # noqa: E402
from src.models.fine import AppliedFine, FineCategory, FineStatus, FineType  # noqa: E402
from src.services.db import create_db_engine  # noqa: E402
from src.services.settings_service import SettingsSnapshot  # noqa: E402


class LedgerFactory:
    """Creates committed ledger rows with sensible defaults."""

    def __init__(self, db: Session):
        self.db = db
        self._sequence = 0

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        return row

    def customer(self, **overrides) -> Customer:
        self._sequence += 1
        values = {
            "account_number": f"NyWs-{self._sequence:03d}",
            "full_name": f"Customer {self._sequence}",
            "phone": f"07000000{self._sequence:02d}",
            "zone": Zone.G3.value,
            "customer_type": CustomerType.INDIVIDUAL.value,
            "is_active": True,
            "credit_balance": Decimal("0.00"),
        }
        values.update(overrides)
        return self._save(Customer(**values))

    def bill(self, customer: Customer, **overrides) -> Bill:
        start = overrides.pop("billing_period_start", date(2024, 1, 1))
        charges = Decimal(str(overrides.pop("current_charges", "300.00")))
        values = {
            "customer_id": customer.id,
            "bill_number": f"BILL-{start:%Y%m}-T-{customer.id}",
            "billing_period_start": start,
            "billing_period_end": date(start.year + (start.month == 12), start.month % 12 + 1, 1),
            "previous_balance": Decimal("0.00"),
            "current_charges": charges,
            "fines_applied": Decimal("0.00"),
            "credit_applied": Decimal("0.00"),
            "amount_paid": Decimal("0.00"),
            "total_amount": charges,
            "due_date": date(start.year, start.month, 6),
            "status": BillStatus.PENDING.value,
            "bill_type": BillType.FLAT_RATE.value,
        }
        values.update(overrides)
        return self._save(Bill(**values))

    def fine_type(self, **overrides) -> FineType:
        values = {
            "fine_name": "Late Payment Fine",
            "fine_type": FineCategory.LATE_PAYMENT.value,
            "amount": Decimal("50.00"),
            "is_percentage": False,
            "grace_period_days": None,
            "is_active": True,
        }
        values.update(overrides)
        return self._save(FineType(**values))

    def fine(self, customer: Customer, fine_type: FineType, bill: Bill | None = None, **overrides) -> AppliedFine:
        amount = Decimal(str(overrides.pop("amount", "50.00")))
        values = {
            "customer_id": customer.id,
            "bill_id": bill.id if bill else None,
            "fine_type_id": fine_type.id,
            "amount": amount,
            "amount_paid": Decimal("0.00"),
            "applied_date": date(2024, 1, 12),
            "episode": 1,
            "status": FineStatus.PENDING.value,
        }
        values.update(overrides)
        fine = AppliedFine(**values)
        if bill is not None:
            bill.fines_applied = Decimal(bill.fines_applied) + amount
            bill.total_amount = Decimal(bill.total_amount) + amount
        return self._save(fine)

    def contribution(self, customer: Customer, **overrides) -> Contribution:
        month = overrides.pop("contribution_month", date(2024, 1, 1))
        values = {
            "customer_id": customer.id,
            "contribution_month": month,
            "amount_required": Decimal("100.00"),
            "amount_paid": Decimal("0.00"),
            "due_date": date(month.year, month.month, 28),
            "status": ContributionStatus.PENDING.value,
        }
        values.update(overrides)
        return self._save(Contribution(**values))


@pytest.fixture
def engine():
    """Shared in-memory SQLite engine with all tables created."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def factory(db_session):
    return LedgerFactory(db_session)


@pytest.fixture
def settings():
    """Default settings snapshot."""
    return SettingsSnapshot()


@pytest.fixture
def app_config():
    """Configuration used by API tests."""
    return AppConfig(
        database_url="sqlite://",
        jwt_secret_key="test-secret-key",
        equity_consumer_key="equity-key",
        equity_consumer_secret="equity-secret",
        equity_allowed_networks="196.216.242.224/32,10.0.0.0/8",
        trust_forwarded_for=True,
        admin_api_key="admin-key",
        scheduler_enabled=False,
        scheduler_shutdown_grace_seconds=1.0,
    )
