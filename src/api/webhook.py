"""FastAPI application: bank callback, admin triggers and the job scheduler."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from src.api.admin import router as admin_router
from src.api.equity import router as equity_router
from src.config import AppConfig, get_config
from src.services.db import create_session_factory
from src.services.errors import (
    AuthenticationError,
    BillingEngineError,
    NotFoundError,
    ValidationError,
)
from src.services.jobs import build_scheduler
from src.services.payment_service import PaymentIntakeGateway

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    session_factory: sessionmaker | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        config: Configuration (default: loaded from environment)
        session_factory: Session factory (default: built from config.database_url)

    Returns:
        FastAPI app with gateway, scheduler and session factory on ``app.state``
    """
    config = config or get_config()
    session_factory = session_factory or create_session_factory(config.database_url)
    gateway = PaymentIntakeGateway(session_factory)
    scheduler = build_scheduler(config, session_factory, gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.scheduler_enabled:
            scheduler.start()
        else:
            logger.info("Scheduler disabled by configuration")
        yield
        await scheduler.shutdown(grace_seconds=config.scheduler_shutdown_grace_seconds)

    app = FastAPI(
        title="Water Billing Engine",
        description="Billing, fines and payment reconciliation for a water utility",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.scheduler = scheduler

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        # Same body for every cause so nothing leaks to the caller
        logger.info("Unauthorized %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=401, content={"success": False, "code": "UNAUTHORIZED"})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, **exc.to_dict()})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, **exc.to_dict()})

    @app.exception_handler(BillingEngineError)
    async def engine_error_handler(request: Request, exc: BillingEngineError) -> JSONResponse:
        logger.error("Unhandled %s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=500, content={"success": False, **exc.to_dict()})

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint for monitoring."""
        return {"status": "ok", "scheduler_running": scheduler.running}

    app.include_router(equity_router)
    app.include_router(admin_router)
    return app


__all__ = ["create_app"]
