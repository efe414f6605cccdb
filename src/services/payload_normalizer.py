"""Normalization of bank payment callbacks into one canonical event.

The bank's channels (branch, agent, Equitel, M-Pesa paybill, USSD, app) do
not agree on field names or channel spelling; everything is mapped onto
PaymentEvent before the gateway sees it.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from src.models.payment import PaymentMethod
from src.services.allocation_service import CENT, to_money
from src.services.errors import ValidationError

logger = logging.getLogger(__name__)

# canonical field -> accepted spellings, first match wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "transaction_id": ("transaction_id", "transactionId", "bankreference", "TransactionReference"),
    "member_number": ("member_number", "billNumber", "accountNumber", "CustomerRefNumber"),
    "amount": ("amount", "billAmount", "tranAmount"),
    "payment_method": ("payment_method", "paymentMode", "channel"),
    "status": ("status", "transactionStatus"),
    "timestamp": ("timestamp", "transactionDate", "tranDate"),
    "narrative": ("narrative", "tranParticular", "remarks"),
    "customer_name": ("customer_name", "customerName", "payerName"),
    "phone": ("phone", "phoneNumber", "msisdn"),
}

KNOWN_FIELDS = frozenset(alias for aliases in FIELD_ALIASES.values() for alias in aliases) | {
    "reference_type",
}

# lowercase, punctuation-stripped channel spelling -> method
CHANNEL_ALIASES: dict[str, PaymentMethod] = {
    "mpesa": PaymentMethod.MPESA,
    "equitympesa": PaymentMethod.MPESA,
    "paybill": PaymentMethod.MPESA,
    "equitel": PaymentMethod.EQUITEL,
    "equityequitel": PaymentMethod.EQUITEL,
    "branch": PaymentMethod.BRANCH,
    "branchdeposit": PaymentMethod.BRANCH,
    "equitybranch": PaymentMethod.BRANCH,
    "cash": PaymentMethod.BRANCH,
    "agent": PaymentMethod.AGENT,
    "equityagent": PaymentMethod.AGENT,
    "app": PaymentMethod.APP,
    "mobileapp": PaymentMethod.APP,
    "equityapp": PaymentMethod.APP,
    "eazzyapp": PaymentMethod.APP,
    "ussd": PaymentMethod.USSD,
    "247": PaymentMethod.USSD,
    "equityussd": PaymentMethod.USSD,
}

FAILED_BANK_STATUSES = frozenset({"failed", "failure", "reversed", "cancelled", "declined"})

TIMESTAMP_FORMATS = ("%Y%m%d%H%M%S", "%d-%m-%Y %H:%M:%S", "%d/%m/%Y %H:%M:%S")


@dataclass(frozen=True)
class PaymentEvent:
    """Canonical payment notification."""

    transaction_id: str
    member_number: str
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: datetime
    bank_status: str = "completed"
    narrative: str | None = None
    customer_name: str | None = None
    phone: str | None = None

    @property
    def is_failed_at_bank(self) -> bool:
        return self.bank_status in FAILED_BANK_STATUSES


def _pick(raw: Mapping[str, Any], canonical: str) -> Any:
    for alias in FIELD_ALIASES[canonical]:
        value = raw.get(alias)
        if value is not None and str(value).strip() != "":
            return value
    return None


def normalize_channel(value: Any) -> PaymentMethod:
    """Map a channel spelling (e.g. "M-Pesa", "BRANCH_DEPOSIT", "*247#") to a PaymentMethod.

    Raises:
        ValidationError: If the channel is missing or not recognised
    """
    if value is None:
        raise ValidationError("Missing payment channel", code="invalid_channel")
    key = re.sub(r"[^a-z0-9]", "", str(value).lower())
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError:
        pass
    if key in CHANNEL_ALIASES:
        return CHANNEL_ALIASES[key]
    raise ValidationError(f"Unknown payment channel: {value!r}", code="invalid_channel")


def parse_amount(value: Any) -> Decimal:
    """Parse a positive amount, accepting "1,500.00" style strings.

    Raises:
        ValidationError: If missing, not a number, not positive or not whole cents
    """
    if value is None:
        raise ValidationError("Missing payment amount", code="invalid_amount")
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid payment amount: {value!r}", code="invalid_amount") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Payment amount must be positive: {value!r}", code="invalid_amount")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"Payment amount has sub-cent precision: {value!r}", code="invalid_amount")
    return to_money(amount)


def parse_timestamp(value: Any) -> datetime:
    """Parse the bank timestamp; naive values are taken as UTC. Missing means now."""
    if value is None:
        return datetime.now(timezone.utc)
    text = str(value).strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        logger.warning("Unparseable payment timestamp %r, using receive time", value)
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_payment_event(raw: Mapping[str, Any]) -> PaymentEvent:
    """Build a PaymentEvent from a raw callback body.

    Args:
        raw: Decoded JSON body as delivered by the bank

    Returns:
        PaymentEvent with canonical field values

    Raises:
        ValidationError: Missing transaction id or account, bad amount or channel
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("Payment callback body must be a JSON object")

    unknown = sorted(set(raw) - KNOWN_FIELDS)
    if unknown:
        logger.debug("Unrecognized callback fields kept in raw payload: %s", unknown)

    transaction_id = _pick(raw, "transaction_id")
    if transaction_id is None:
        raise ValidationError("Missing transaction id", code="missing_transaction_id")
    member_number = _pick(raw, "member_number")
    if member_number is None:
        raise ValidationError("Missing member/account number", code="missing_account")

    status = _pick(raw, "status")
    narrative = _pick(raw, "narrative")
    customer_name = _pick(raw, "customer_name")
    phone = _pick(raw, "phone")

    return PaymentEvent(
        transaction_id=str(transaction_id).strip(),
        member_number=str(member_number).strip(),
        amount=parse_amount(_pick(raw, "amount")),
        payment_method=normalize_channel(_pick(raw, "payment_method")),
        payment_date=parse_timestamp(_pick(raw, "timestamp")),
        bank_status=str(status).strip().lower() if status is not None else "completed",
        narrative=str(narrative) if narrative is not None else None,
        customer_name=str(customer_name) if customer_name is not None else None,
        phone=str(phone) if phone is not None else None,
    )


__all__ = [
    "PaymentEvent",
    "normalize_payment_event",
    "normalize_channel",
    "parse_amount",
    "parse_timestamp",
]
