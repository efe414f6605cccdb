"""Nightly housekeeping: overdue statuses, stale payments, outbox retention."""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.models.audit_log import AuditLog
from src.models.bill import Bill, BillStatus
from src.models.contribution import Contribution, ContributionStatus
from src.models.payment import Payment, PaymentStatus
from src.services.audit_service import AuditService
from src.services.db import unit_of_work
from src.services.notification_service import NotificationService
from src.services.settings_service import SettingsService, SettingsSnapshot

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    overdue_contributions: int = 0
    overdue_bills: int = 0
    expired_payments: int = 0
    stale_payments: int = 0
    purged_notifications: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class MaintenanceService:
    """Status sweeps run by the system_maintenance job.

    Each sweep runs in its own transaction.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def mark_overdue_contributions(self, as_of: date) -> int:
        with unit_of_work(self.db):
            result = self.db.execute(
                update(Contribution)
                .where(
                    Contribution.status.in_(
                        [ContributionStatus.PENDING.value, ContributionStatus.PARTIAL.value]
                    ),
                    Contribution.due_date < as_of,
                )
                .values(status=ContributionStatus.OVERDUE.value)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    def mark_overdue_bills(self, as_of: date) -> int:
        with unit_of_work(self.db):
            result = self.db.execute(
                update(Bill)
                .where(Bill.status == BillStatus.PENDING.value, Bill.due_date < as_of)
                .values(status=BillStatus.OVERDUE.value)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    def expire_pending_payments(self, before: datetime) -> int:
        """Fail unresolved payments (no customer) pending since before ``before``.

        Payments of a known customer are never expired here; see
        ``flag_stale_payments``.
        """
        with unit_of_work(self.db):
            result = self.db.execute(
                update(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.customer_id.is_(None),
                    Payment.created_at < before,
                )
                .values(status=PaymentStatus.FAILED.value, failure_reason="expired")
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        if count:
            logger.warning("Expired %d unresolved payments pending since before %s", count, before)
        return count

    def flag_stale_payments(self, before: datetime) -> int:
        """Audit each customer payment still pending since before ``before``.

        The payment stays pending so reconciliation keeps retrying it. Each
        payment gets one ``flag_stale`` audit entry.

        Returns:
            Number of payments flagged by this call
        """
        already_flagged = (
            select(AuditLog.id)
            .where(
                AuditLog.entity_type == "payment",
                AuditLog.entity_id == Payment.id,
                AuditLog.action == "flag_stale",
            )
            .exists()
        )
        with unit_of_work(self.db):
            payments = list(
                self.db.execute(
                    select(Payment)
                    .where(
                        Payment.status == PaymentStatus.PENDING.value,
                        Payment.customer_id.is_not(None),
                        Payment.created_at < before,
                        ~already_flagged,
                    )
                    .order_by(Payment.id)
                ).scalars()
            )
            for payment in payments:
                logger.warning(
                    "Payment %s (%s for customer %d) still pending since %s",
                    payment.transaction_id,
                    payment.amount,
                    payment.customer_id,
                    payment.created_at,
                )
                AuditService.log(
                    self.db,
                    entity_type="payment",
                    entity_id=payment.id,
                    action="flag_stale",
                    changes={
                        "transaction_id": payment.transaction_id,
                        "customer_id": payment.customer_id,
                        "amount": f"{Decimal(payment.amount):.2f}",
                        "pending_since": payment.created_at.isoformat(),
                    },
                )
        return len(payments)

    def purge_notifications(self, before: datetime) -> int:
        with unit_of_work(self.db):
            count = NotificationService.purge_processed(self.db, before)
        return count

    def run(self, as_of: date, settings: SettingsSnapshot | None = None) -> MaintenanceResult:
        """Run every sweep for the given day."""
        if settings is None:
            settings = SettingsService(self.db).snapshot()
            self.db.rollback()
        day_start = datetime.combine(as_of, time.min, tzinfo=timezone.utc)
        payment_cutoff = day_start - timedelta(days=settings.pending_payment_expiry_days)

        result = MaintenanceResult(
            overdue_contributions=self.mark_overdue_contributions(as_of),
            overdue_bills=self.mark_overdue_bills(as_of),
            expired_payments=self.expire_pending_payments(payment_cutoff),
            stale_payments=self.flag_stale_payments(payment_cutoff),
            purged_notifications=self.purge_notifications(
                day_start - timedelta(days=settings.notification_retention_days)
            ),
        )
        logger.info("Maintenance %s: %s", as_of, result.to_dict())
        return result


__all__ = ["MaintenanceService", "MaintenanceResult"]
