"""Monthly member contribution generation."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.contribution import Contribution, ContributionStatus
from src.models.customer import Customer
from src.models.notification_request import NotificationEvent
from src.services.allocation_service import ZERO, to_money
from src.services.db import unit_of_work
from src.services.errors import BillingEngineError, ConflictError, UnitError, ValidationError
from src.services.notification_service import NotificationService
from src.services.period_service import month_start
from src.services.settings_service import SettingsService, SettingsSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ContributionRunResult:
    """Outcome of one contribution run."""

    contribution_month: date
    created: int = 0
    skipped: int = 0
    errors: list[UnitError] = field(default_factory=list)
    contribution_ids: list[int] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "contribution_month": self.contribution_month.isoformat(),
            "created": self.created,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "errors": [error.to_dict() for error in self.errors],
            "contribution_ids": self.contribution_ids,
        }


class ContributionService:
    """Creates one contribution per active customer per month."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def _create(self, customer: Customer, month: date, settings: SettingsSnapshot) -> Contribution:
        exists = self.db.execute(
            select(Contribution.id).where(
                Contribution.customer_id == customer.id,
                Contribution.contribution_month == month,
            )
        ).first()
        if exists is not None:
            raise ConflictError(f"Contribution for {month:%Y-%m} exists for customer {customer.id}")

        amount = to_money(settings.monthly_contribution_amount)
        if amount <= 0:
            raise ValidationError("Monthly contribution amount must be positive", code="invalid_rate")

        contribution = Contribution(
            customer_id=customer.id,
            contribution_month=month,
            amount_required=amount,
            amount_paid=ZERO,
            due_date=month + timedelta(days=settings.contribution_due_days),
            status=ContributionStatus.PENDING.value,
        )
        self.db.add(contribution)
        self.db.flush()

        NotificationService.emit(
            self.db,
            NotificationEvent.CONTRIBUTION_DUE,
            customer.id,
            customer_name=customer.full_name,
            account_number=customer.account_number,
            month=month.strftime("%B %Y"),
            amount=amount,
            due_date=contribution.due_date,
        )
        return contribution

    def generate(
        self,
        month: date,
        customer_ids: list[int] | None = None,
        cancel_event: threading.Event | None = None,
        settings: SettingsSnapshot | None = None,
    ) -> ContributionRunResult:
        """Generate contributions for the month containing ``month``."""
        month = month_start(month)
        result = ContributionRunResult(contribution_month=month)
        if settings is None:
            settings = SettingsService(self.db).snapshot()

        stmt = select(Customer).where(Customer.is_active.is_(True)).order_by(Customer.id)
        if customer_ids is not None:
            stmt = stmt.where(Customer.id.in_(customer_ids))
        customers = list(self.db.execute(stmt).scalars())
        self.db.rollback()

        for customer in customers:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Contribution run for %s cancelled", f"{month:%Y-%m}")
                result.cancelled = True
                break

            customer_id = customer.id
            try:
                with unit_of_work(self.db):
                    contribution = self._create(customer, month, settings)
            except ConflictError:
                result.skipped += 1
                continue
            except BillingEngineError as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.warning("Contribution failed for customer %d: %s", customer_id, e.message)
                continue
            except Exception as e:
                result.errors.append(UnitError.from_exception(customer_id, e))
                logger.exception("Unexpected contribution failure for customer %d", customer_id)
                continue

            result.created += 1
            result.contribution_ids.append(contribution.id)

        logger.info(
            "Contributions %s: created=%d skipped=%d errors=%d",
            f"{month:%Y-%m}",
            result.created,
            result.skipped,
            len(result.errors),
        )
        return result


__all__ = ["ContributionService", "ContributionRunResult"]
