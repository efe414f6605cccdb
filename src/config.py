"""Application configuration from environment variables and .env file."""

import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Equity Bank callback source addresses
DEFAULT_EQUITY_NETWORKS = ",".join(
    [
        "196.216.242.224/32",
        "196.216.242.223/32",
        "196.216.242.163/32",
        "196.216.242.171/32",
        "20.50.237.39/32",
        "20.50.237.229/32",
    ]
)


class AppConfig(BaseSettings):
    """Engine configuration loaded from environment variables.

    Pydantic automatically loads values from:
    1. OS environment variables (at instantiation time)
    2. .env file

    Business parameters (rates, due days, grace days) are NOT here: they live
    in the system_settings table and are snapshotted per job run.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Allow extra fields in .env file
    )

    database_url: str = "sqlite:///./billing.db"
    log_file: str = "logs/server.log"

    # Token exchange for the payment callback
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    callback_token_ttl_seconds: int = 3600
    equity_consumer_key: str = ""
    equity_consumer_secret: str = ""
    equity_allowed_networks: str = DEFAULT_EQUITY_NETWORKS
    """Comma-separated CIDR ranges allowed to call the bank endpoints."""
    trust_forwarded_for: bool = False
    """Take the client address from X-Forwarded-For (set when behind a reverse proxy)."""

    # Manual trigger surface
    admin_api_key: str = ""

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Africa/Nairobi"
    scheduler_shutdown_grace_seconds: float = 30.0
    billing_cron: str = "0 6 1 * *"
    contributions_cron: str = "0 7 1 * *"
    fines_cron: str = "0 10 * * *"
    maintenance_cron: str = "0 2 * * *"
    reconciliation_cron: str = "*/15 * * * *"
    overdue_notices_cron: str = "0 9 * * *"

    @property
    def allowed_networks(self) -> list[str]:
        return [n.strip() for n in self.equity_allowed_networks.split(",") if n.strip()]

    def validate(self) -> None:
        """Validate required configuration is present."""
        if not self.jwt_secret_key:
            raise ValueError("JWT_SECRET_KEY environment variable is required")


# Lazy loader to ensure environment is loaded before instantiation
_config_instance: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create the config instance."""
    global _config_instance
    if _config_instance is None:
        _config_instance = AppConfig()
        _config_instance.validate()
    return _config_instance


__all__ = ["AppConfig", "get_config"]
