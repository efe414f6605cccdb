"""Integration tests for daily overdue bill and contribution notices."""

import threading
from datetime import date
from decimal import Decimal

from sqlalchemy import select

from src.models.bill import BillStatus
from src.models.contribution import ContributionStatus
from src.models.notification_request import NotificationEvent, NotificationRequest
from src.services.overdue_notice_service import OverdueNoticeService


def _requests(db, event):
    return list(
        db.execute(
            select(NotificationRequest)
            .where(NotificationRequest.event_type == event.value)
            .order_by(NotificationRequest.id)
        ).scalars()
    )


class TestOverdueNotices:
    """One notice per customer and kind, summarising everything past due."""

    def test_bill_notice_sums_overdue_bills(self, db_session, factory):
        customer = factory.customer(full_name="Mary Wanjiku")
        factory.bill(customer, billing_period_start=date(2024, 1, 1))
        factory.bill(
            customer,
            billing_period_start=date(2024, 2, 1),
            amount_paid=Decimal("100.00"),
            status=BillStatus.PARTIALLY_PAID.value,
        )

        result = OverdueNoticeService(db_session).send_overdue_notices(date(2024, 2, 16))

        assert result.bill_notices == 1
        assert result.contribution_notices == 0
        (request,) = _requests(db_session, NotificationEvent.BILL_OVERDUE)
        assert request.customer_id == customer.id
        assert request.payload["customer_name"] == "Mary Wanjiku"
        assert request.payload["account_number"] == "NyWs-001"
        assert request.payload["amount"] == "500.00"
        assert request.payload["days_overdue"] == 41
        assert request.payload["references"] == [
            f"BILL-202401-T-{customer.id}",
            f"BILL-202402-T-{customer.id}",
        ]

    def test_contribution_reminder(self, db_session, factory):
        customer = factory.customer()
        factory.contribution(customer, status=ContributionStatus.OVERDUE.value)

        result = OverdueNoticeService(db_session).send_overdue_notices(date(2024, 2, 1))

        assert result.contribution_notices == 1
        (request,) = _requests(db_session, NotificationEvent.CONTRIBUTION_OVERDUE)
        assert request.payload["amount"] == "100.00"
        assert request.payload["references"] == ["2024-01"]
        assert request.payload["days_overdue"] == 4

    def test_not_yet_due_paid_and_inactive_are_ignored(self, db_session, factory):
        active = factory.customer()
        factory.bill(active, billing_period_start=date(2024, 3, 1))
        factory.bill(
            active,
            amount_paid=Decimal("300.00"),
            status=BillStatus.PAID.value,
        )
        factory.bill(factory.customer(is_active=False))

        result = OverdueNoticeService(db_session).send_overdue_notices(date(2024, 2, 1))

        assert result.bill_notices == 0
        assert _requests(db_session, NotificationEvent.BILL_OVERDUE) == []

    def test_rerun_same_day_skips(self, db_session, factory):
        factory.bill(factory.customer())
        service = OverdueNoticeService(db_session)

        service.send_overdue_notices(date(2024, 2, 1))
        again = service.send_overdue_notices(date(2024, 2, 1))

        assert again.bill_notices == 0
        assert again.skipped == 1
        assert len(_requests(db_session, NotificationEvent.BILL_OVERDUE)) == 1

    def test_cancellation_between_customers(self, db_session, factory):
        factory.bill(factory.customer())
        cancel = threading.Event()
        cancel.set()

        result = OverdueNoticeService(db_session).send_overdue_notices(date(2024, 2, 1), cancel_event=cancel)

        assert result.cancelled is True
        assert result.bill_notices == 0
