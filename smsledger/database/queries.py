"""Aggregate and reporting queries over the ledger.

These go beyond single-table CRUD: import statistics for the history
endpoint and status counts for the CLI.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from .models import LedgerTransaction


def summarize_imports(
    transactions: list[LedgerTransaction], now: datetime
) -> dict:
    """Stats over a list of SMS-imported rows.

    this_month counts rows created in now's calendar month.
    """
    month_prefix = now.strftime("%Y-%m")
    return {
        "total_imported": len(transactions),
        "this_month": sum(
            1 for t in transactions if (t.created_at or "").startswith(month_prefix)
        ),
        "total_amount": round(sum(t.amount for t in transactions), 2),
    }


def get_status_counts(conn: sqlite3.Connection, user_id: str | None = None) -> dict:
    """Ledger counts by source plus connection counts.

    Restricted to one user when user_id is given.
    """
    where = " WHERE user_id = ?" if user_id else ""
    params: tuple = (user_id,) if user_id else ()

    rows = conn.execute(
        f"SELECT source, COUNT(*) AS cnt FROM transactions{where} GROUP BY source",
        params,
    ).fetchall()
    by_source = {r["source"]: r["cnt"] for r in rows}

    conn_row = conn.execute(
        "SELECT COUNT(*) AS total,"
        "  COALESCE(SUM(is_active), 0) AS active"
        f" FROM sms_connections{where}",
        params,
    ).fetchone()
    imports_row = conn.execute(
        f"SELECT COUNT(*) FROM imports{where}", params
    ).fetchone()

    return {
        "total_txns": sum(by_source.values()),
        "sms_imported": by_source.get("sms_import", 0),
        "sms_pending": by_source.get("sms_pending", 0),
        "manual": by_source.get("manual", 0),
        "total_connections": conn_row["total"],
        "active_connections": conn_row["active"],
        "total_imports": imports_row[0],
    }
