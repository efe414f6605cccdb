"""Shared FastAPI dependencies resolved from application state."""

from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from src.services.payment_service import PaymentIntakeGateway
from src.services.scheduler import JobScheduler


def get_session(request: Request) -> Generator[Session, None, None]:
    """Database session from the app's session factory."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_gateway(request: Request) -> PaymentIntakeGateway:
    return request.app.state.gateway


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


__all__ = ["get_session", "get_gateway", "get_scheduler"]
