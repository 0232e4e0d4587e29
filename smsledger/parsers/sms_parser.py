"""Bank SMS parser.

Turns one SMS body into a ParsedTransaction candidate:
  template → amount → direction → merchant → category → date → confidence

A message that is not a bank transaction (no template, no amount) yields
None. That is the common case for real SMS traffic, not an error.

Confidence is a fixed weighted sum, capped at 1.0:
  0.5  base
  +0.3 × share of the template's triggers that matched
  +0.2 amount within (0, 1,000,000)
  +0.2 a debit or credit keyword was present
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from smsledger.categorize.merchant_match import resolve_category
from smsledger.config import Config
from smsledger.parsers.base import (
    CREDIT,
    DEBIT,
    BankPattern,
    ParsedTransaction,
    describe,
    normalize_message,
    parse_amount,
    parse_sms_date,
    to_utc,
)
from smsledger.parsers.registry import BankPatternRegistry

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
TRIGGER_WEIGHT = 0.3
AMOUNT_WEIGHT = 0.2
INDICATOR_WEIGHT = 0.2
MAX_PLAUSIBLE_AMOUNT = 1_000_000

_CURRENCY_AMOUNT = re.compile(r"(?:rs\.?|inr|usd|\$|₹)\s*[\d,]+", re.IGNORECASE)
_ACCOUNT_REF = re.compile(r"(?:a/c|account|card|xxxx)", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SmsParser:
    """Parse bank SMS text against a BankPatternRegistry.

    Args:
        config: Application config (merchant table, keyword lists).
        registry: Bank templates; built from config when omitted.
        clock: Returns "now" for messages without a usable date.
    """

    def __init__(
        self,
        config: Config,
        registry: BankPatternRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.registry = registry or BankPatternRegistry.from_config(config)
        self.clock = clock or _utcnow

    def parse(
        self, message: str, received_at: datetime | None = None
    ) -> ParsedTransaction | None:
        """Extract a transaction candidate from one SMS.

        received_at, when given, replaces the clock as the fallback date.
        """
        if not message or not message.strip():
            return None
        text = normalize_message(message)

        template = self.registry.find_matching_template(text)
        if template is None:
            return None

        amount = self._extract_amount(text, template)
        if amount is None:
            return None

        direction, has_indicator = self._determine_direction(text, template)
        merchant = self._extract_merchant(text, template)
        category = resolve_category(merchant, text, self.config)

        occurred_at = self._extract_date(text, template)
        if occurred_at is None:
            occurred_at = to_utc(received_at) if received_at else to_utc(self.clock())

        confidence = self._confidence(text, template, amount, has_indicator)

        return ParsedTransaction(
            amount=amount,
            direction=direction,
            merchant=merchant,
            category=category,
            occurred_at=occurred_at,
            description=describe(direction, amount, merchant),
            raw_text=message,
            confidence=confidence,
            template=template.name,
        )

    def parse_many(self, messages: Iterable[str]) -> list[ParsedTransaction]:
        """Parse each message independently, newest first.

        Messages that do not parse are dropped.
        """
        parsed = []
        dropped = 0
        for message in messages:
            candidate = self.parse(message)
            if candidate is None:
                dropped += 1
                continue
            parsed.append(candidate)
        if dropped:
            logger.debug("Dropped %d non-transaction message(s)", dropped)
        parsed.sort(key=lambda c: c.occurred_at, reverse=True)
        return parsed

    def is_transaction_sms(self, message: str) -> bool:
        """Cheap check: transaction keyword, currency amount and account reference."""
        text = (message or "").lower()
        has_keyword = any(k in text for k in self.config.transaction_keywords)
        return (
            has_keyword
            and _CURRENCY_AMOUNT.search(text) is not None
            and _ACCOUNT_REF.search(text) is not None
        )

    # ── Extraction steps ─────────────────────────────────

    @staticmethod
    def _extract_amount(text: str, template: BankPattern) -> float | None:
        match = template.amount_pattern.search(text)
        if not match:
            return None
        amount = parse_amount(match.group(1))
        if amount is None or amount <= 0:
            return None
        return amount

    @staticmethod
    def _determine_direction(text: str, template: BankPattern) -> tuple[str, bool]:
        """Debit keywords win over credit keywords; no keyword means debit.

        Returns (direction, keyword_found).
        """
        if any(k in text for k in template.debit_keywords):
            return DEBIT, True
        if any(k in text for k in template.credit_keywords):
            return CREDIT, True
        return DEBIT, False

    @staticmethod
    def _extract_merchant(text: str, template: BankPattern) -> str | None:
        if template.merchant_pattern is None:
            return None
        match = template.merchant_pattern.search(text)
        if not match:
            return None
        merchant = re.sub(r"\s+", " ", match.group(1).strip())
        return merchant or None

    @staticmethod
    def _extract_date(text: str, template: BankPattern) -> datetime | None:
        if template.date_pattern is None:
            return None
        match = template.date_pattern.search(text)
        if not match:
            return None
        parsed = parse_sms_date(match.group(1))
        if parsed is None:
            logger.debug("Unparseable SMS date %r, using fallback", match.group(1))
        return parsed

    @staticmethod
    def _confidence(
        text: str, template: BankPattern, amount: float, has_indicator: bool
    ) -> float:
        score = BASE_CONFIDENCE
        score += (
            template.trigger_hits(text) / len(template.trigger_patterns)
        ) * TRIGGER_WEIGHT
        if 0 < amount < MAX_PLAUSIBLE_AMOUNT:
            score += AMOUNT_WEIGHT
        if has_indicator:
            score += INDICATOR_WEIGHT
        return min(score, 1.0)
