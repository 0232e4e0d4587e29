"""Merchant matching: maps merchant text to a spending category.

Rules come from merchants.yaml and are checked in order; each rule is a
case-insensitive substring ("contains") or full-string ("exact") match.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from smsledger.config import Config

logger = logging.getLogger(__name__)


@dataclass
class MerchantMatch:
    """Result of a merchant match."""
    category: str
    pattern: str


def match_merchant(text: str, config: Config) -> MerchantMatch | None:
    """Return the first keyword rule whose pattern occurs in text."""
    if not text:
        return None
    return _match_against_rules(text, config.merchant_keywords)


def resolve_category(
    merchant: str | None, message: str | None, config: Config
) -> str:
    """Category for a parsed SMS.

    Searches the merchant text when there is one, otherwise the whole
    message. Falls back to the configured fallback category.
    """
    search_text = merchant or message or ""
    match = match_merchant(search_text, config)
    if match is None:
        return config.fallback_category
    return match.category


def _match_against_rules(text: str, rules: list[dict]) -> MerchantMatch | None:
    text_lower = text.lower()

    for rule in rules:
        match_type = rule.get("match", "contains")
        pattern = str(rule.get("pattern", ""))
        if not pattern:
            continue
        pattern_lower = pattern.lower()

        matched = False
        if match_type == "exact":
            matched = text_lower == pattern_lower
        elif match_type == "contains":
            matched = pattern_lower in text_lower

        if matched:
            category = rule.get("category")
            if not category:
                logger.warning(
                    "Merchant rule missing category for pattern '%s'", pattern
                )
                continue
            return MerchantMatch(category=category, pattern=pattern)
    return None
