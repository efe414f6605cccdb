"""System settings access and per-run settings snapshot."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Callable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.customer import CustomerType
from src.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)

# key -> (default value, description, category)
DEFAULT_SETTINGS: dict[str, tuple[str, str, str]] = {
    "flat_rate_individual": ("300.00", "Monthly flat rate for individual customers", "billing"),
    "flat_rate_institution": ("1000.00", "Monthly flat rate for institutions", "billing"),
    "default_billing_day": ("1", "Day of month bills are issued", "billing"),
    "payment_due_days": ("5", "Days after bill issue for due date", "billing"),
    "late_fine_grace_days": ("5", "Grace period before applying late fines", "billing"),
    "fine_escalation_days": (
        "0",
        "Days between repeated late fines on one bill (0 = one fine per bill)",
        "billing",
    ),
    "monthly_contribution_amount": ("100.00", "Monthly contribution per customer", "contributions"),
    "contribution_due_days": ("30", "Days after month start for contribution due date", "contributions"),
    "pending_payment_expiry_days": ("7", "Days before an unsettled payment is failed", "payments"),
    "notification_retention_days": ("180", "Days processed notifications are kept", "notifications"),
    "paybill_number": ("247247", "M-Pesa paybill for Equity collections", "payments"),
    "equity_account_number": ("", "Equity collection account", "payments"),
}

CHANNEL_KEYS = ("paybill_number", "equity_account_number")


@dataclass(frozen=True)
class SettingsSnapshot:
    """Immutable settings view used for the whole of one job run."""

    flat_rate_individual: Decimal = Decimal("300.00")
    flat_rate_institution: Decimal = Decimal("1000.00")
    default_billing_day: int = 1
    payment_due_days: int = 5
    late_fine_grace_days: int = 5
    fine_escalation_days: int = 0
    monthly_contribution_amount: Decimal = Decimal("100.00")
    contribution_due_days: int = 30
    pending_payment_expiry_days: int = 7
    notification_retention_days: int = 180
    payment_channels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def flat_rate_for(self, customer_type: str) -> Decimal:
        """Flat monthly charge for a customer type."""
        if customer_type == CustomerType.INSTITUTION:
            return self.flat_rate_institution
        return self.flat_rate_individual


def _parse(raw: Mapping[str, str], key: str, convert: Callable, default):
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return convert(str(value).strip())
    except (ValueError, InvalidOperation):
        logger.warning("Invalid value for setting %s: %r, using default %s", key, value, default)
        return default


class SettingsService:
    """Read and write the key/value settings store."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def get_all(self) -> dict[str, str]:
        rows = self.db.execute(select(SystemSetting)).scalars().all()
        return {row.setting_key: row.setting_value for row in rows}

    def get(self, key: str, default: str | None = None) -> str | None:
        row = self.db.execute(
            select(SystemSetting).where(SystemSetting.setting_key == key)
        ).scalar_one_or_none()
        return row.setting_value if row else default

    def set(self, key: str, value: str) -> SystemSetting:
        """Insert or update a setting (caller commits)."""
        row = self.db.execute(
            select(SystemSetting).where(SystemSetting.setting_key == key)
        ).scalar_one_or_none()
        if row is None:
            _, description, category = DEFAULT_SETTINGS.get(key, ("", None, "general"))
            row = SystemSetting(
                setting_key=key,
                setting_value=str(value),
                description=description,
                category=category,
            )
            self.db.add(row)
        else:
            row.setting_value = str(value)
        return row

    def seed_defaults(self) -> int:
        """Insert missing default settings. Returns count inserted (caller commits)."""
        existing = set(self.get_all())
        inserted = 0
        for key, (value, description, category) in DEFAULT_SETTINGS.items():
            if key in existing:
                continue
            self.db.add(
                SystemSetting(
                    setting_key=key,
                    setting_value=value,
                    description=description,
                    category=category,
                )
            )
            inserted += 1
        return inserted

    def snapshot(self) -> SettingsSnapshot:
        """Read all settings once into an immutable snapshot."""
        raw = self.get_all()
        defaults = SettingsSnapshot()
        snapshot = SettingsSnapshot(
            flat_rate_individual=_parse(
                raw, "flat_rate_individual", Decimal, defaults.flat_rate_individual
            ),
            flat_rate_institution=_parse(
                raw, "flat_rate_institution", Decimal, defaults.flat_rate_institution
            ),
            default_billing_day=_parse(raw, "default_billing_day", int, defaults.default_billing_day),
            payment_due_days=_parse(raw, "payment_due_days", int, defaults.payment_due_days),
            late_fine_grace_days=_parse(
                raw, "late_fine_grace_days", int, defaults.late_fine_grace_days
            ),
            fine_escalation_days=_parse(
                raw, "fine_escalation_days", int, defaults.fine_escalation_days
            ),
            monthly_contribution_amount=_parse(
                raw, "monthly_contribution_amount", Decimal, defaults.monthly_contribution_amount
            ),
            contribution_due_days=_parse(
                raw, "contribution_due_days", int, defaults.contribution_due_days
            ),
            pending_payment_expiry_days=_parse(
                raw, "pending_payment_expiry_days", int, defaults.pending_payment_expiry_days
            ),
            notification_retention_days=_parse(
                raw, "notification_retention_days", int, defaults.notification_retention_days
            ),
            payment_channels=MappingProxyType(
                {key: raw[key] for key in CHANNEL_KEYS if raw.get(key)}
            ),
        )
        logger.debug("Settings snapshot: %s", snapshot)
        return snapshot


__all__ = ["SettingsService", "SettingsSnapshot", "DEFAULT_SETTINGS"]
