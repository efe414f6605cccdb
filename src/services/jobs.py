"""Default scheduled jobs and their handlers.

Each handler opens its own session, runs one service call over all units
and records a job/run audit entry with the run summary.
"""

import logging
import threading
from datetime import date, datetime
from functools import partial
from typing import Any, Callable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, sessionmaker

from src.config import AppConfig
from src.services.audit_service import AuditService
from src.services.bills_service import BillingService
from src.services.contribution_service import ContributionService
from src.services.db import unit_of_work
from src.services.fine_service import FineService
from src.services.maintenance_service import MaintenanceService
from src.services.overdue_notice_service import OverdueNoticeService
from src.services.payment_service import PaymentIntakeGateway
from src.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)

MONTHLY_BILLING = "monthly_billing"
MONTHLY_CONTRIBUTIONS = "monthly_contributions"
FINE_APPLICATION = "fine_application"
SYSTEM_MAINTENANCE = "system_maintenance"
PAYMENT_RECONCILIATION = "payment_reconciliation"
OVERDUE_NOTIFICATIONS = "overdue_notifications"


def local_today(timezone_name: str) -> date:
    """Today's date in the utility's timezone."""
    return datetime.now(ZoneInfo(timezone_name)).date()


def _record_run(db: Session, job_name: str, summary: dict[str, Any]) -> None:
    with unit_of_work(db):
        AuditService.log(db, entity_type="job", entity_id=None, action="run", changes={"job": job_name, **summary})


def _run_audited(
    job_name: str,
    session_factory: sessionmaker,
    work: Callable[[Session], dict[str, Any]],
) -> dict[str, Any]:
    with session_factory() as db:
        summary = work(db)
        _record_run(db, job_name, summary)
    return summary


def run_monthly_billing(
    session_factory: sessionmaker,
    timezone_name: str,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    def work(db: Session) -> dict[str, Any]:
        result = BillingService(db).generate(local_today(timezone_name), cancel_event=cancel_event)
        summary = result.to_dict()
        summary.pop("bills")
        return summary

    return _run_audited(MONTHLY_BILLING, session_factory, work)


def run_monthly_contributions(
    session_factory: sessionmaker,
    timezone_name: str,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    def work(db: Session) -> dict[str, Any]:
        result = ContributionService(db).generate(local_today(timezone_name), cancel_event=cancel_event)
        summary = result.to_dict()
        summary.pop("contribution_ids")
        return summary

    return _run_audited(MONTHLY_CONTRIBUTIONS, session_factory, work)


def run_fine_application(
    session_factory: sessionmaker,
    timezone_name: str,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    def work(db: Session) -> dict[str, Any]:
        return FineService(db).apply_overdue_fines(local_today(timezone_name), cancel_event=cancel_event).to_dict()

    return _run_audited(FINE_APPLICATION, session_factory, work)


def run_system_maintenance(
    session_factory: sessionmaker,
    timezone_name: str,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    def work(db: Session) -> dict[str, Any]:
        return MaintenanceService(db).run(local_today(timezone_name)).to_dict()

    return _run_audited(SYSTEM_MAINTENANCE, session_factory, work)


def run_overdue_notifications(
    session_factory: sessionmaker,
    timezone_name: str,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    def work(db: Session) -> dict[str, Any]:
        return OverdueNoticeService(db).send_overdue_notices(
            local_today(timezone_name), cancel_event=cancel_event
        ).to_dict()

    return _run_audited(OVERDUE_NOTIFICATIONS, session_factory, work)


def run_payment_reconciliation(
    session_factory: sessionmaker,
    gateway: PaymentIntakeGateway,
    cancel_event: threading.Event,
) -> dict[str, Any]:
    summary = gateway.reconcile_pending(cancel_event=cancel_event).to_dict()
    if summary["examined"]:
        with session_factory() as db:
            _record_run(db, PAYMENT_RECONCILIATION, summary)
    return summary


def register_default_jobs(
    scheduler: JobScheduler,
    config: AppConfig,
    session_factory: sessionmaker,
    gateway: PaymentIntakeGateway,
) -> None:
    """Register the standard jobs with their configured cron schedules."""
    tz = config.scheduler_timezone
    scheduler.register(MONTHLY_BILLING, config.billing_cron, partial(run_monthly_billing, session_factory, tz))
    scheduler.register(
        MONTHLY_CONTRIBUTIONS,
        config.contributions_cron,
        partial(run_monthly_contributions, session_factory, tz),
    )
    scheduler.register(FINE_APPLICATION, config.fines_cron, partial(run_fine_application, session_factory, tz))
    scheduler.register(
        SYSTEM_MAINTENANCE,
        config.maintenance_cron,
        partial(run_system_maintenance, session_factory, tz),
    )
    scheduler.register(
        PAYMENT_RECONCILIATION,
        config.reconciliation_cron,
        partial(run_payment_reconciliation, session_factory, gateway),
    )
    scheduler.register(
        OVERDUE_NOTIFICATIONS,
        config.overdue_notices_cron,
        partial(run_overdue_notifications, session_factory, tz),
    )


def build_scheduler(
    config: AppConfig,
    session_factory: sessionmaker,
    gateway: PaymentIntakeGateway,
) -> JobScheduler:
    """Scheduler with the default jobs registered (not started)."""
    scheduler = JobScheduler(timezone_name=config.scheduler_timezone)
    register_default_jobs(scheduler, config, session_factory, gateway)
    return scheduler


__all__ = [
    "build_scheduler",
    "register_default_jobs",
    "local_today",
    "MONTHLY_BILLING",
    "MONTHLY_CONTRIBUTIONS",
    "FINE_APPLICATION",
    "SYSTEM_MAINTENANCE",
    "PAYMENT_RECONCILIATION",
    "OVERDUE_NOTIFICATIONS",
]
