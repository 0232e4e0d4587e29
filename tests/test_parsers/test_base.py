"""Tests for smsledger.parsers.base — value objects and helpers."""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from smsledger.parsers.base import (
    BankPattern,
    ParsedTransaction,
    compute_dedup_key,
    compute_file_hash,
    describe,
    format_timestamp,
    mask_phone,
    parse_amount,
    parse_sms_date,
)


def _candidate(**kw) -> ParsedTransaction:
    defaults = dict(
        amount=500.0, direction="debit", category="Food & Dining",
        occurred_at=datetime(2023, 12, 15, tzinfo=timezone.utc),
        description="Payment of ₹500.00 at swiggy", raw_text="raw",
        confidence=0.9, merchant="swiggy",
    )
    defaults.update(kw)
    return ParsedTransaction(**defaults)


class TestBankPatternFromDict:
    def test_builds_compiled_patterns(self):
        tmpl = BankPattern.from_dict({
            "name": "X",
            "triggers": ["xbank", "debited"],
            "amount": r"rs\s*(\d+)",
            "merchant": r"at\s+(\w+)",
            "debit": ["Debited"],
        })
        assert tmpl.matches("xbank alert")
        assert tmpl.trigger_hits("xbank rs 5 debited") == 2
        assert tmpl.debit_keywords == ("debited",)
        assert tmpl.date_pattern is None
        assert not tmpl.is_fallback

    @pytest.mark.parametrize("missing", ["name", "triggers", "amount"])
    def test_missing_required(self, missing):
        data = {"name": "X", "triggers": ["x"], "amount": r"(\d+)"}
        del data[missing]
        with pytest.raises(ValueError):
            BankPattern.from_dict(data)

    def test_bad_regex(self):
        with pytest.raises(ValueError, match="Bad regex"):
            BankPattern.from_dict({"name": "X", "triggers": ["("], "amount": r"(\d+)"})

    def test_immutable(self):
        tmpl = BankPattern.from_dict({"name": "X", "triggers": ["x"], "amount": r"(\d+)"})
        with pytest.raises(dataclasses.FrozenInstanceError):
            tmpl.name = "Y"


class TestParsedTransaction:
    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            _candidate().amount = 1.0

    def test_replace_produces_new_record(self):
        txn = _candidate()
        other = dataclasses.replace(txn, category="Other")
        assert txn.category == "Food & Dining"
        assert other.category == "Other"

    def test_ledger_type(self):
        assert _candidate(direction="debit").ledger_type == "expense"
        assert _candidate(direction="credit").ledger_type == "income"

    def test_to_dict(self):
        d = _candidate().to_dict()
        assert d["type"] == "debit"
        assert d["date"] == "2023-12-15T00:00:00+00:00"
        assert d["rawMessage"] == "raw"


class TestParseAmount:
    @pytest.mark.parametrize("raw,expected", [
        ("500", 500.0), ("10,000.00", 10000.0), ("1,23,456.50", 123456.5),
    ])
    def test_valid(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", ["", ",", "abc", "inf", "nan", None])
    def test_invalid(self, raw):
        assert parse_amount(raw) is None


class TestParseSmsDate:
    @pytest.mark.parametrize("raw,expected", [
        ("15-12-23", datetime(2023, 12, 15)),
        ("15/12/2023", datetime(2023, 12, 15)),
        ("15-dec-23", datetime(2023, 12, 15)),
        ("15 dec 2023", datetime(2023, 12, 15)),
        ("15 december 2023", datetime(2023, 12, 15)),
        ("03/04/2024", datetime(2024, 4, 3)),
    ])
    def test_day_first(self, raw, expected):
        assert parse_sms_date(raw) == expected.replace(tzinfo=timezone.utc)

    @pytest.mark.parametrize("raw", ["32-01-24", "15-13-23", "yesterday"])
    def test_unparseable(self, raw):
        assert parse_sms_date(raw) is None


class TestTimestamps:
    def test_fixed_width_utc(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        dt = datetime(2024, 1, 1, 5, 30, tzinfo=ist)
        assert format_timestamp(dt) == "2024-01-01T00:00:00+00:00"

    def test_naive_is_utc(self):
        assert format_timestamp(datetime(2024, 1, 1)) == "2024-01-01T00:00:00+00:00"


class TestDescribe:
    def test_payment_with_merchant(self):
        assert describe("debit", 500, "swiggy") == "Payment of ₹500.00 at swiggy"

    def test_received_without_merchant(self):
        assert describe("credit", 1234.5, None) == "Received of ₹1234.50"


class TestDedupKey:
    def test_same_hour_same_key(self):
        a = compute_dedup_key("u1", 500.0, datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc), "d")
        b = compute_dedup_key("u1", 500.0, datetime(2024, 1, 1, 10, 55, tzinfo=timezone.utc), "d")
        assert a == b
        assert a.startswith("u1:50000:2024-01-01T10:")

    def test_user_scoped(self):
        dt = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert compute_dedup_key("u1", 5, dt, "d") != compute_dedup_key("u2", 5, dt, "d")


class TestMisc:
    def test_file_hash(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("hello")
        assert compute_file_hash(f) == (
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        )

    def test_mask_phone(self):
        assert mask_phone("+91 98765 43210") == "***3210"
        assert mask_phone("") == "***"
