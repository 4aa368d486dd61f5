from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from moneyos.dedup import compute_dedup_hash
from moneyos.errors import ValidationError

DEBIT = "DEBIT"
CREDIT = "CREDIT"
DEFAULT_CATEGORY = "Uncategorized"

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d/%m/%Y",
    "%d/%m/%y",
    "%d-%b-%Y",
    "%d-%b-%y",
    "%d %b %Y",
]

TYPE_ALIASES = {
    "DEBIT": DEBIT,
    "DR": DEBIT,
    "EXPENSE": DEBIT,
    "CREDIT": CREDIT,
    "CR": CREDIT,
    "INCOME": CREDIT,
}

CURRENCY_MARKERS = re.compile(r"(?i)(inr|rs\.?|₹|\$|€|£)")
CENT = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")
MAX_DATE_LENGTH = 40


@dataclass(frozen=True)
class Candidate:
    hash: str | None
    type: str
    amount: Decimal
    category: str
    description: str | None = None
    date: str | None = None
    client_id: str | None = None
    firewall_decision: str | None = None
    firewall_reason: str | None = None

    @property
    def is_debit(self) -> bool:
        return self.type == DEBIT

    def to_row(self, user_id: int) -> dict:
        return {
            "user_id": user_id,
            "client_id": self.client_id,
            "hash": self.hash,
            "type": self.type,
            "amount": self.amount,
            "category": self.category,
            "description": self.description,
            "date": self.date,
            "firewall_decision": self.firewall_decision,
            "firewall_reason": self.firewall_reason,
        }


def normalize_candidate(raw: Mapping[str, Any], *, derive_hash: bool = False) -> Candidate:
    """Validate and default one raw transaction dict.

    Raises ``ValidationError`` naming the offending field. With
    ``derive_hash`` a missing hash is computed from the message content.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("Transaction must be an object.")

    amount = parse_amount(raw.get("amount"))
    if amount is None:
        raise ValidationError("Transaction amount is missing or malformed.")
    if amount <= 0:
        raise ValidationError("Transaction amount must be greater than zero.")
    if amount > MAX_AMOUNT:
        raise ValidationError("Transaction amount is too large.")

    txn_type = normalize_type(raw.get("type"))
    description = clean_text(_as_text(raw.get("description"))) or None
    raw_date = clean_text(_as_text(raw.get("date")))
    # Unrecognised dates are kept as sent.
    normalized_date = (normalize_date(raw_date) or raw_date) if raw_date else None
    if normalized_date and len(normalized_date) > MAX_DATE_LENGTH:
        raise ValidationError("Transaction date is too long.")

    txn_hash = clean_text(_as_text(raw.get("hash"))) or None
    if txn_hash is None and derive_hash:
        txn_hash = compute_dedup_hash(
            sender=_as_text(raw.get("sender") or raw.get("from")),
            amount=amount,
            date=normalized_date,
            body=_as_text(raw.get("body")) or description,
        )

    return Candidate(
        hash=txn_hash,
        type=txn_type,
        amount=amount,
        category=clean_text(_as_text(raw.get("category"))) or DEFAULT_CATEGORY,
        description=description,
        date=normalized_date or date.today().isoformat(),
        client_id=clean_text(_as_text(raw.get("id"))) or None,
        firewall_decision=clean_text(_as_text(raw.get("firewallDecision"))) or None,
        firewall_reason=clean_text(_as_text(raw.get("firewallReason"))) or None,
    )


def normalize_type(value: Any) -> str:
    cleaned = clean_text(_as_text(value)).upper()
    if not cleaned:
        return DEBIT
    try:
        return TYPE_ALIASES[cleaned]
    except KeyError as exc:
        raise ValidationError(f"Unsupported transaction type: {cleaned}") from exc


def parse_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    else:
        amount = parse_decimal(_as_text(value))
    if amount is None or not amount.is_finite():
        return None
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = CURRENCY_MARKERS.sub("", cleaned).replace(",", "")
    cleaned = re.sub(r"\s+", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None

    return -amount if negative else amount


def normalize_date(value: str) -> str | None:
    """Return an ISO string so stored dates sort chronologically."""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    iso_value = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(iso_value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.isoformat()


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)
