"""Base parser: shared data structures and utility functions."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

DEBIT = "debit"
CREDIT = "credit"

# Indian bank SMS write dates day-first.
SMS_DATE_FORMATS = (
    "%d-%m-%Y", "%d-%m-%y",
    "%d/%m/%Y", "%d/%m/%y",
    "%d-%b-%Y", "%d-%b-%y",
    "%d/%b/%Y", "%d/%b/%y",
    "%d %b %Y", "%d %b %y",
    "%d %B %Y", "%d %B %y",
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S+00:00"


@dataclass(frozen=True)
class BankPattern:
    """One bank's SMS template.

    Immutable once built. All patterns are compiled case-insensitive and
    are expected to run against lower-cased message text.
    """
    name: str
    trigger_patterns: tuple[re.Pattern, ...]
    amount_pattern: re.Pattern
    merchant_pattern: re.Pattern | None = None
    date_pattern: re.Pattern | None = None
    debit_keywords: tuple[str, ...] = ()
    credit_keywords: tuple[str, ...] = ()
    is_fallback: bool = False

    def matches(self, text: str) -> bool:
        """True if at least one trigger pattern matches."""
        return any(p.search(text) for p in self.trigger_patterns)

    def trigger_hits(self, text: str) -> int:
        return sum(1 for p in self.trigger_patterns if p.search(text))

    @classmethod
    def from_dict(cls, data: dict) -> BankPattern:
        """Build a template from one banks.yaml entry."""
        name = data.get("name")
        if not name:
            raise ValueError("Bank template missing 'name'")
        triggers = data.get("triggers") or []
        if not triggers:
            raise ValueError(f"Bank template '{name}' has no triggers")
        if not data.get("amount"):
            raise ValueError(f"Bank template '{name}' has no amount pattern")

        def _compile(pattern: str | None) -> re.Pattern | None:
            if not pattern:
                return None
            try:
                return re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(
                    f"Bad regex in bank template '{name}': {pattern!r} ({e})"
                ) from e

        return cls(
            name=name,
            trigger_patterns=tuple(_compile(t) for t in triggers),
            amount_pattern=_compile(data["amount"]),
            merchant_pattern=_compile(data.get("merchant")),
            date_pattern=_compile(data.get("date")),
            debit_keywords=tuple(k.lower() for k in data.get("debit", [])),
            credit_keywords=tuple(k.lower() for k in data.get("credit", [])),
            is_fallback=bool(data.get("fallback", False)),
        )


@dataclass(frozen=True)
class ParsedTransaction:
    """Candidate extracted from one SMS, before it reaches the ledger."""
    amount: float
    direction: str            # "debit" or "credit"
    category: str
    occurred_at: datetime     # UTC
    description: str
    raw_text: str             # original SMS body, original casing
    confidence: float
    merchant: str | None = None
    template: str | None = None   # name of the bank template that matched

    @property
    def ledger_type(self) -> str:
        return "expense" if self.direction == DEBIT else "income"

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "type": self.direction,
            "merchant": self.merchant,
            "category": self.category,
            "date": format_timestamp(self.occurred_at),
            "description": self.description,
            "rawMessage": self.raw_text,
            "confidence": self.confidence,
            "template": self.template,
        }


def normalize_message(message: str) -> str:
    """Working copy for matching: trimmed and lower-cased."""
    return message.strip().lower()


def parse_amount(raw: str) -> float | None:
    """'10,000.00' -> 10000.0. None if unparseable or non-finite."""
    try:
        value = float(raw.replace(",", ""))
    except (ValueError, TypeError, AttributeError):
        return None
    if not math.isfinite(value):
        return None
    return value


def parse_sms_date(raw: str) -> datetime | None:
    """Parse a captured SMS date (day-first) into a UTC datetime.

    Returns None if no known format fits.
    """
    text = re.sub(r"\s+", " ", raw.strip())
    for fmt in SMS_DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=timezone.utc)
    return None


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC timestamp so stored dates compare lexically."""
    return to_utc(dt).strftime(TIMESTAMP_FORMAT)


def describe(direction: str, amount: float, merchant: str | None) -> str:
    """'Payment of ₹500.00 at swiggy bangalore'."""
    action = "Payment" if direction == DEBIT else "Received"
    merchant_text = f" at {merchant}" if merchant else ""
    return f"{action} of ₹{amount:.2f}{merchant_text}"


def compute_dedup_key(
    user_id: str, amount: float, occurred_at: datetime, description: str
) -> str:
    """{user_id}:{amount_cents}:{hour bucket}:{description digest}."""
    cents = int(round(amount * 100))
    bucket = to_utc(occurred_at).strftime("%Y-%m-%dT%H")
    digest = hashlib.sha256(description.encode()).hexdigest()[:16]
    return f"{user_id}:{cents}:{bucket}:{digest}"


def compute_file_hash(file_path: Path) -> str:
    """SHA256 of entire file contents."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def mask_phone(phone_number: str) -> str:
    """Keep the last 4 digits only, for logs."""
    digits = re.sub(r"\D", "", phone_number or "")
    return f"***{digits[-4:]}" if digits else "***"
