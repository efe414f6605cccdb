"""Authentication for the bank callback and admin endpoints.

Provides helpers for:
- Source address allow-listing (CIDR ranges, IPv4-mapped IPv6 handled)
- Vendor credential exchange for a short-lived JWT bearer token
- Bearer token verification
- FastAPI dependencies guarding the bank and admin routers
"""

import hmac
import ipaddress
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from fastapi import Depends, Header, Request
from jose import JWTError, jwt

from src.config import AppConfig, get_config
from src.services.errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_TYPE = "equity_callback"


def is_ip_allowed(client_ip: str | None, networks: Iterable[str]) -> bool:
    """Check a client address against CIDR ranges.

    Args:
        client_ip: Address as reported by the server (may be "::ffff:a.b.c.d")
        networks: CIDR strings, e.g. ["196.216.242.224/32"]

    Returns:
        True if the address is inside any of the networks
    """
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip.strip())
    except ValueError:
        logger.warning("Unparseable client address %r", client_ip)
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    for network in networks:
        try:
            if address in ipaddress.ip_network(network, strict=False):
                return True
        except ValueError:
            logger.error("Invalid network in allow-list: %r", network)
    return False


def _constant_time_equal(given: str | None, expected: str) -> bool:
    if not expected or given is None:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def verify_consumer_credentials(consumer_key: str | None, consumer_secret: str | None, config: AppConfig) -> bool:
    """Compare vendor credentials against configuration in constant time."""
    key_ok = _constant_time_equal(consumer_key, config.equity_consumer_key)
    secret_ok = _constant_time_equal(consumer_secret, config.equity_consumer_secret)
    return key_ok and secret_ok


def issue_access_token(config: AppConfig, now: datetime | None = None) -> tuple[str, int]:
    """Create a bearer token for the payment callback.

    Returns:
        Tuple of (encoded JWT, lifetime in seconds)
    """
    now = now or datetime.now(timezone.utc)
    ttl = config.callback_token_ttl_seconds
    claims = {
        "sub": config.equity_consumer_key or "equity",
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(claims, config.jwt_secret_key, algorithm=config.jwt_algorithm)
    return token, ttl


def verify_access_token(token: str, config: AppConfig) -> dict[str, Any]:
    """Decode and check a callback bearer token.

    Raises:
        AuthenticationError: If the token is invalid, expired or of another type
    """
    try:
        claims = jwt.decode(token, config.jwt_secret_key, algorithms=[config.jwt_algorithm])
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e
    if claims.get("type") != TOKEN_TYPE:
        raise AuthenticationError("Token is not a callback token")
    return claims


def app_config(request: Request) -> AppConfig:
    """Configuration the app was created with, falling back to the global one."""
    config = getattr(request.app.state, "config", None)
    return config if config is not None else get_config()


def client_address(request: Request, config: AppConfig) -> str | None:
    """Caller address, honouring X-Forwarded-For only when configured."""
    if config.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_allowed_source(request: Request, config: AppConfig = Depends(app_config)) -> str:
    """Dependency: reject callers outside the bank's address ranges."""
    address = client_address(request, config)
    if not is_ip_allowed(address, config.allowed_networks):
        logger.warning("Rejected bank request from %s", address)
        raise AuthenticationError(f"Source address {address} not allowed")
    return address


def require_equity_caller(
    request: Request,
    authorization: str | None = Header(default=None),
    config: AppConfig = Depends(app_config),
) -> dict[str, Any]:
    """Dependency: allowed source address and a valid bearer token."""
    require_allowed_source(request, config)
    if not authorization or not authorization.lower().startswith("bearer "):
        logger.warning("Bank request without bearer token")
        raise AuthenticationError("Missing bearer token")
    return verify_access_token(authorization[7:].strip(), config)


def require_admin_key(
    x_admin_key: str | None = Header(default=None),
    config: AppConfig = Depends(app_config),
) -> None:
    """Dependency: X-Admin-Key must match the configured admin key."""
    if not _constant_time_equal(x_admin_key, config.admin_api_key):
        logger.warning("Rejected admin request with invalid key")
        raise AuthenticationError("Invalid admin key")


__all__ = [
    "is_ip_allowed",
    "verify_consumer_credentials",
    "issue_access_token",
    "verify_access_token",
    "app_config",
    "client_address",
    "require_allowed_source",
    "require_equity_caller",
    "require_admin_key",
    "TOKEN_TYPE",
]
