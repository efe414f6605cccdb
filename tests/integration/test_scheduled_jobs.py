"""Integration tests for the default scheduled job handlers."""

import threading
from datetime import date

import pytest
from sqlalchemy import select

from src.models.audit_log import AuditLog
from src.services import jobs
from src.services.payment_service import PaymentIntakeGateway


@pytest.fixture
def fixed_today(monkeypatch):
    monkeypatch.setattr(jobs, "local_today", lambda timezone_name: date(2024, 1, 12))


def _job_audits(db):
    return list(
        db.execute(select(AuditLog).where(AuditLog.entity_type == "job").order_by(AuditLog.id)).scalars()
    )


class TestJobHandlers:
    """Each handler runs its service and records a job/run audit entry."""

    def test_register_default_jobs(self, app_config, session_factory):
        scheduler = jobs.build_scheduler(app_config, session_factory, PaymentIntakeGateway(session_factory))

        assert scheduler.job_names() == [
            jobs.MONTHLY_BILLING,
            jobs.MONTHLY_CONTRIBUTIONS,
            jobs.FINE_APPLICATION,
            jobs.SYSTEM_MAINTENANCE,
            jobs.PAYMENT_RECONCILIATION,
            jobs.OVERDUE_NOTIFICATIONS,
        ]
        assert scheduler.timezone_name == "Africa/Nairobi"

    def test_monthly_billing_job(self, session_factory, factory, db_session, fixed_today):
        factory.customer()

        summary = jobs.run_monthly_billing(session_factory, "Africa/Nairobi", threading.Event())

        assert summary["created"] == 1
        assert summary["billing_month"] == "2024-01-01"
        assert "bills" not in summary
        (audit,) = _job_audits(db_session)
        assert audit.action == "run"
        assert audit.changes["job"] == jobs.MONTHLY_BILLING
        assert audit.changes["created"] == 1

    def test_fine_job_after_billing(self, session_factory, factory, db_session, fixed_today):
        customer = factory.customer()
        factory.fine_type()
        factory.bill(customer)

        summary = jobs.run_fine_application(session_factory, "UTC", threading.Event())

        assert summary["applied"] == 1

    def test_contribution_and_maintenance_jobs(self, session_factory, factory, db_session, fixed_today):
        factory.customer()

        contributions = jobs.run_monthly_contributions(session_factory, "UTC", threading.Event())
        maintenance = jobs.run_system_maintenance(session_factory, "UTC", threading.Event())

        assert contributions["created"] == 1
        assert maintenance == {
            "overdue_contributions": 0,
            "overdue_bills": 0,
            "expired_payments": 0,
            "stale_payments": 0,
            "purged_notifications": 0,
        }
        assert [a.changes["job"] for a in _job_audits(db_session)] == [
            jobs.MONTHLY_CONTRIBUTIONS,
            jobs.SYSTEM_MAINTENANCE,
        ]

    def test_reconciliation_job_audits_only_when_work_done(self, session_factory, factory, db_session):
        factory.customer()
        gateway = PaymentIntakeGateway(session_factory)

        idle = jobs.run_payment_reconciliation(session_factory, gateway, threading.Event())
        gateway.receive(
            {"transaction_id": "EQ1", "member_number": "NyWs-001", "amount": "10", "payment_method": "agent"}
        )
        busy = jobs.run_payment_reconciliation(session_factory, gateway, threading.Event())

        assert idle["examined"] == 0
        assert busy["settled"] == 1
        assert len(_job_audits(db_session)) == 1

    def test_cancelled_run_is_reported(self, session_factory, factory, fixed_today):
        factory.customer()
        cancel = threading.Event()
        cancel.set()

        summary = jobs.run_monthly_billing(session_factory, "UTC", cancel)

        assert summary["cancelled"] is True
        assert summary["created"] == 0

    def test_overdue_notifications_job(self, session_factory, factory, db_session, fixed_today):
        factory.bill(factory.customer())

        summary = jobs.run_overdue_notifications(session_factory, "Africa/Nairobi", threading.Event())

        assert summary["bill_notices"] == 1
        assert summary["as_of"] == "2024-01-12"
        (audit,) = _job_audits(db_session)
        assert audit.changes["job"] == jobs.OVERDUE_NOTIFICATIONS
