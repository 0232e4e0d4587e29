"""Shared test fixtures."""

from datetime import datetime, timezone
from pathlib import Path

# Test fixture config directory with the shipped bank/merchant tables
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

MIGRATIONS_DIR = Path(__file__).parent.parent / "smsledger" / "database" / "migrations"

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# HDFC debit with a bank-format date. Parses to 500.00 / swiggy / 2023-12-15.
HDFC_SMS = (
    "HDFC Bank: Rs.500.00 debited from a/c **1234 on 15-Dec-23 at "
    "SWIGGY BANGALORE. Avl bal: Rs.10,000.00"
)

# SBI credit, no merchant; category comes from the message body.
SBI_SALARY_SMS = (
    "SBI: Your a/c XX5678 is credited with INR 25,000.00 on 01/12/2023 "
    "from ACME CORP SALARY."
)

# Generic template, 2 of 3 triggers, debit keyword present.
GENERIC_PAID_SMS = "Paid Rs 250 to Cafe Coffee Day on 05/01/2024"

# Generic template, 1 of 3 triggers, no direction keyword, no date.
# Confidence 0.5 + 0.1 + 0.2 = 0.8.
GENERIC_PLAIN_SMS = "Rs 1,200 at Big Bazaar Mall"

# Generic template, amount out of range, no keyword: confidence 0.6.
IMPLAUSIBLE_SMS = "Rs 2,000,000 at Land Registry Office"

NOT_A_TRANSACTION = "Your OTP for login is 482913. Do not share it with anyone."
