"""Equity Bank integration endpoints.

Flow used by the bank:
1. POST /token with the vendor credentials to get a bearer token
2. POST /validate-customer before taking money, to check the account
3. POST /callback after the payment, acknowledged once durably recorded
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from src.api.deps import get_gateway
from src.config import AppConfig
from src.services.auth_service import (
    app_config,
    issue_access_token,
    require_allowed_source,
    require_equity_caller,
    verify_consumer_credentials,
)
from src.services.errors import AuthenticationError, ValidationError
from src.services.payment_service import ACK_ERROR, ACK_INVALID, AckResult, PaymentIntakeGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/equity", tags=["equity"])

basic_auth = HTTPBasic(auto_error=False)


class TokenRequest(BaseModel):
    consumer_key: str | None = None
    consumer_secret: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class ValidateCustomerRequest(BaseModel):
    member_number: str | None = None
    phone: str | None = None


@router.post("/token", response_model=TokenResponse, dependencies=[Depends(require_allowed_source)])
async def issue_token(
    body: TokenRequest | None = None,
    basic: HTTPBasicCredentials | None = Depends(basic_auth),
    config: AppConfig = Depends(app_config),
) -> TokenResponse:
    """Exchange vendor credentials (JSON body or HTTP Basic) for a bearer token."""
    consumer_key = body.consumer_key if body else None
    consumer_secret = body.consumer_secret if body else None
    if basic is not None and not consumer_key:
        consumer_key, consumer_secret = basic.username, basic.password

    if not verify_consumer_credentials(consumer_key, consumer_secret, config):
        raise AuthenticationError("Invalid consumer credentials")

    token, ttl = issue_access_token(config)
    logger.info("Issued callback token (expires in %ds)", ttl)
    return TokenResponse(access_token=token, expires_in=ttl)


@router.post("/callback", dependencies=[Depends(require_equity_caller)])
async def payment_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: PaymentIntakeGateway = Depends(get_gateway),
) -> JSONResponse:
    """Receive a payment notification.

    Returns as soon as the payment is recorded; allocation runs afterwards as
    a background task. Internal failures are never detailed to the bank.
    """
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Payment callback with malformed JSON body")
        ack = AckResult(False, ACK_INVALID, None, datetime.now(timezone.utc))
        return JSONResponse(status_code=400, content=ack.to_response())

    try:
        ack = await run_in_threadpool(gateway.receive, body)
    except Exception as e:
        logger.error("Unhandled error receiving payment callback: %s", e, exc_info=True)
        ack = AckResult(False, ACK_ERROR, None, datetime.now(timezone.utc))

    if ack.needs_settlement and ack.payment_id is not None:
        background_tasks.add_task(gateway.settle, ack.payment_id)

    if ack.success:
        status_code = 200
    elif ack.code == ACK_INVALID:
        status_code = 400
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=ack.to_response())


@router.post("/validate-customer", dependencies=[Depends(require_equity_caller)])
async def validate_customer(
    body: ValidateCustomerRequest,
    gateway: PaymentIntakeGateway = Depends(get_gateway),
) -> JSONResponse:
    """Account lookup the bank performs before accepting a payment."""
    try:
        data = await run_in_threadpool(gateway.validate_customer, body.member_number or "")
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": e.message})

    if data is None:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Customer account not found"},
        )
    if data["status"] != "active":
        return JSONResponse(
            status_code=403,
            content={
                "success": False,
                "message": "Customer account is inactive. Please contact support.",
            },
        )
    return JSONResponse(status_code=200, content={"success": True, "data": data})


__all__ = ["router"]
