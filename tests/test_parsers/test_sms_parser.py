"""Tests for smsledger.parsers.sms_parser — single and batch SMS parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from smsledger.config import Config
from smsledger.parsers.base import CREDIT, DEBIT, BankPattern
from smsledger.parsers.registry import BankPatternRegistry
from smsledger.parsers.sms_parser import SmsParser
from tests.conftest import (
    FIXED_NOW,
    FIXTURE_CONFIG_DIR,
    GENERIC_PAID_SMS,
    GENERIC_PLAIN_SMS,
    HDFC_SMS,
    IMPLAUSIBLE_SMS,
    NOT_A_TRANSACTION,
    SBI_SALARY_SMS,
)


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)


@pytest.fixture
def parser(config):
    return SmsParser(config, clock=lambda: FIXED_NOW)


# ── End-to-end examples ──────────────────────────────────


class TestHdfcDebit:
    def test_amount_and_direction(self, parser):
        txn = parser.parse(HDFC_SMS)
        assert txn is not None
        assert txn.amount == 500.0
        assert txn.direction == DEBIT
        assert txn.ledger_type == "expense"

    def test_merchant_and_category(self, parser):
        txn = parser.parse(HDFC_SMS)
        assert "swiggy" in txn.merchant
        assert txn.merchant == "swiggy bangalore"
        assert txn.category == "Food & Dining"

    def test_bank_date_pattern(self, parser):
        txn = parser.parse(HDFC_SMS)
        assert txn.occurred_at == datetime(2023, 12, 15, tzinfo=timezone.utc)

    def test_confidence_capped_at_one(self, parser):
        txn = parser.parse(HDFC_SMS)
        assert txn.confidence >= 0.8
        assert txn.confidence == 1.0

    def test_description_and_raw_text(self, parser):
        txn = parser.parse(HDFC_SMS)
        assert txn.description == "Payment of ₹500.00 at swiggy bangalore"
        assert txn.raw_text == HDFC_SMS
        assert txn.template == "HDFC Bank"


class TestSbiCredit:
    def test_credit_with_thousands_separator(self, parser):
        txn = parser.parse(SBI_SALARY_SMS)
        assert txn.amount == 25000.0
        assert txn.direction == CREDIT
        assert txn.ledger_type == "income"
        assert txn.template == "SBI Bank"

    def test_no_merchant_categorizes_from_message(self, parser):
        txn = parser.parse(SBI_SALARY_SMS)
        assert txn.merchant is None
        assert txn.category == "Income"
        assert txn.description == "Received of ₹25000.00"

    def test_slash_date(self, parser):
        txn = parser.parse(SBI_SALARY_SMS)
        assert txn.occurred_at == datetime(2023, 12, 1, tzinfo=timezone.utc)


class TestGenericFallback:
    def test_generic_template_used(self, parser):
        txn = parser.parse(GENERIC_PAID_SMS)
        assert txn.template == "Generic Bank"
        assert txn.amount == 250.0
        assert txn.merchant == "cafe coffee day"
        assert txn.category == "Food & Dining"
        assert txn.occurred_at == datetime(2024, 1, 5, tzinfo=timezone.utc)

    def test_no_keyword_defaults_to_debit(self, parser):
        txn = parser.parse(GENERIC_PLAIN_SMS)
        assert txn.direction == DEBIT
        assert txn.category == "Shopping"

    def test_partial_triggers_lower_confidence(self, parser):
        txn = parser.parse(GENERIC_PLAIN_SMS)
        assert txn.confidence == pytest.approx(0.8)

    def test_implausible_amount_gets_no_amount_weight(self, parser):
        txn = parser.parse(IMPLAUSIBLE_SMS)
        assert txn.amount == 2_000_000.0
        assert txn.confidence == pytest.approx(0.6)
        assert txn.category == "Other"


# ── Dates ────────────────────────────────────────────────


class TestDateFallback:
    def test_missing_date_uses_clock(self, parser):
        txn = parser.parse(GENERIC_PLAIN_SMS)
        assert txn.occurred_at == FIXED_NOW

    def test_missing_date_prefers_received_at(self, parser):
        received = datetime(2024, 2, 10, 8, 30, tzinfo=timezone.utc)
        txn = parser.parse(GENERIC_PLAIN_SMS, received_at=received)
        assert txn.occurred_at == received

    def test_unparseable_date_falls_back(self, parser):
        txn = parser.parse("HDFC Bank: Rs 100 debited on 45-13-23 at kfc")
        assert txn is not None
        assert txn.occurred_at == FIXED_NOW

    def test_spelled_month(self, parser):
        txn = parser.parse("Rs 300 paid to metro card on 7 march 2024")
        assert txn.occurred_at == datetime(2024, 3, 7, tzinfo=timezone.utc)


# ── No candidate ─────────────────────────────────────────


class TestNoCandidate:
    def test_non_transaction_returns_none(self, parser):
        assert parser.parse(NOT_A_TRANSACTION) is None

    @pytest.mark.parametrize("message", ["", "   ", "\n"])
    def test_blank_returns_none(self, parser, message):
        assert parser.parse(message) is None

    def test_template_without_amount_returns_none(self, parser):
        assert parser.parse("HDFC Bank: your card ending 1234 has been blocked") is None

    def test_zero_amount_returns_none(self, parser):
        assert parser.parse("HDFC Bank: Rs 0 debited from a/c 1234") is None


# ── Properties ───────────────────────────────────────────


class TestProperties:
    MESSAGES = [
        HDFC_SMS, SBI_SALARY_SMS, GENERIC_PAID_SMS,
        GENERIC_PLAIN_SMS, IMPLAUSIBLE_SMS,
    ]

    @pytest.mark.parametrize("message", MESSAGES)
    def test_parsing_is_idempotent(self, parser, message):
        assert parser.parse(message) == parser.parse(message)

    @pytest.mark.parametrize("message", MESSAGES)
    def test_confidence_in_range(self, parser, message):
        txn = parser.parse(message)
        assert 0.5 <= txn.confidence <= 1.0

    def test_debit_keyword_wins_over_credit(self, parser):
        txn = parser.parse("Rs 900 debited from a/c 1234, refund credited later")
        assert txn.direction == DEBIT

    def test_custom_registry(self, config):
        only = BankPattern.from_dict({
            "name": "Only",
            "triggers": [r"zzbank"],
            "amount": r"amt\s*(\d+)",
        })
        parser = SmsParser(
            config, registry=BankPatternRegistry([only]), clock=lambda: FIXED_NOW,
        )
        txn = parser.parse("ZZBANK amt 42")
        assert txn.amount == 42.0
        assert txn.merchant is None
        assert txn.confidence == pytest.approx(0.5 + 0.3 + 0.2)
        assert parser.parse(HDFC_SMS) is None


# ── Batch ────────────────────────────────────────────────


class TestParseMany:
    def test_sorted_newest_first(self, parser):
        txns = parser.parse_many([SBI_SALARY_SMS, GENERIC_PAID_SMS, HDFC_SMS])
        dates = [t.occurred_at for t in txns]
        assert dates == sorted(dates, reverse=True)
        assert [t.template for t in txns] == ["Generic Bank", "HDFC Bank", "SBI Bank"]

    def test_drops_non_transactions(self, parser):
        txns = parser.parse_many([NOT_A_TRANSACTION, HDFC_SMS, ""])
        assert len(txns) == 1

    def test_empty_input(self, parser):
        assert parser.parse_many([]) == []


class TestIsTransactionSms:
    def test_bank_debit(self, parser):
        assert parser.is_transaction_sms(HDFC_SMS) is True

    def test_otp(self, parser):
        assert parser.is_transaction_sms(NOT_A_TRANSACTION) is False

    def test_needs_account_reference(self, parser):
        assert parser.is_transaction_sms("Paid Rs 250 to a friend") is False
