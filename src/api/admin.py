"""Administrative manual trigger endpoints.

All routes require the X-Admin-Key header and return full per-unit error
detail for troubleshooting.
"""

import logging
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.api.deps import get_gateway, get_scheduler, get_session
from src.models.fine import AppliedFine
from src.services.audit_service import AuditService
from src.services.auth_service import require_admin_key
from src.services.bills_service import BillingService
from src.services.contribution_service import ContributionService
from src.services.db import unit_of_work
from src.services.errors import ValidationError
from src.services.fine_service import FineService
from src.services.payment_service import PaymentIntakeGateway
from src.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


class BillingRequest(BaseModel):
    billing_month: date = Field(default_factory=date.today)
    customer_ids: list[int] | None = None


class FinesRequest(BaseModel):
    as_of: date = Field(default_factory=date.today)


class ContributionsRequest(BaseModel):
    month: date = Field(default_factory=date.today)
    customer_ids: list[int] | None = None


class ManualFineRequest(BaseModel):
    customer_id: int
    fine_type_id: int
    reason: str = Field(min_length=1, max_length=500)
    applied_date: date = Field(default_factory=date.today)
    amount: Decimal | None = Field(default=None, gt=0)
    bill_id: int | None = None


class WaiveRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ReconcileRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


def _fine_dict(fine: AppliedFine) -> dict:
    return {
        "fine_id": fine.id,
        "customer_id": fine.customer_id,
        "bill_id": fine.bill_id,
        "fine_type_id": fine.fine_type_id,
        "amount": f"{fine.amount:.2f}",
        "amount_paid": f"{fine.amount_paid:.2f}",
        "applied_date": fine.applied_date.isoformat(),
        "episode": fine.episode,
        "status": fine.status,
    }


def _audit_manual_run(db: Session, job_name: str, summary: dict) -> None:
    with unit_of_work(db):
        AuditService.log(
            db,
            entity_type="job",
            entity_id=None,
            action="run",
            actor="admin",
            changes={"job": job_name, **summary},
        )


@router.post("/billing/generate")
def generate_bills(body: BillingRequest, db: Session = Depends(get_session)) -> dict:
    """Generate bills for a month now."""
    result = BillingService(db).generate(body.billing_month, customer_ids=body.customer_ids)
    summary = result.to_dict()
    _audit_manual_run(db, "monthly_billing", {k: v for k, v in summary.items() if k != "bills"})
    return summary


@router.post("/billing/preview")
def preview_bills(body: BillingRequest, db: Session = Depends(get_session)) -> dict:
    """Compute the bills a run would create without saving anything."""
    return BillingService(db).generate(
        body.billing_month, customer_ids=body.customer_ids, preview=True
    ).to_dict()


@router.post("/fines/apply")
def apply_fines(body: FinesRequest, db: Session = Depends(get_session)) -> dict:
    summary = FineService(db).apply_overdue_fines(body.as_of).to_dict()
    _audit_manual_run(db, "fine_application", summary)
    return summary


@router.post("/fines", status_code=201)
def apply_manual_fine(body: ManualFineRequest, db: Session = Depends(get_session)) -> dict:
    """Charge a fine by hand (reconnection, meter tampering, ...)."""
    fine = FineService(db).apply_manual_fine(
        customer_id=body.customer_id,
        fine_type_id=body.fine_type_id,
        reason=body.reason,
        applied_date=body.applied_date,
        amount=body.amount,
        bill_id=body.bill_id,
    )
    return _fine_dict(fine)


@router.post("/fines/{fine_id}/waive")
def waive_fine(fine_id: int, body: WaiveRequest, db: Session = Depends(get_session)) -> dict:
    return _fine_dict(FineService(db).waive(fine_id, body.reason))


@router.post("/contributions/generate")
def generate_contributions(body: ContributionsRequest, db: Session = Depends(get_session)) -> dict:
    result = ContributionService(db).generate(body.month, customer_ids=body.customer_ids)
    summary = result.to_dict()
    _audit_manual_run(db, "monthly_contributions", summary)
    return summary


@router.post("/payments/reconcile")
async def reconcile_payments(
    body: ReconcileRequest | None = None,
    gateway: PaymentIntakeGateway = Depends(get_gateway),
) -> dict:
    """Retry settlement of pending payments."""
    limit = body.limit if body else 100
    result = await run_in_threadpool(gateway.reconcile_pending, limit)
    return result.to_dict()


@router.get("/jobs")
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)) -> dict:
    return {"running": scheduler.running, "jobs": scheduler.status()}


@router.post("/jobs/{name}/run", status_code=202)
async def run_job(name: str, scheduler: JobScheduler = Depends(get_scheduler)) -> dict:
    """Start a scheduled job immediately (409 if it is already running)."""
    try:
        started = scheduler.trigger(name)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    if not started:
        raise HTTPException(status_code=409, detail=f"Job {name} is already running")
    logger.info("Job %s triggered manually", name)
    return {"job": name, "started": True}


__all__ = ["router"]
