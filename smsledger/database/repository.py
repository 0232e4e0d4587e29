"""SQLite ledger store: raw SQL in, dataclasses from models.py out.

One connection per Repository, opened lazily with WAL journaling and
foreign keys on. SMS-sourced transaction rows carry a UNIQUE dedup_key.

The connection is shared by every thread that holds the Repository (the
HTTP app runs its endpoints on a threadpool), so each statement group and
its commit or rollback run under one re-entrant lock.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

from smsledger.parsers.base import format_timestamp

from .models import (
    SOURCE_SMS_IMPORT,
    SOURCE_SMS_PENDING,
    ConnectionSettings,
    Import,
    LedgerTransaction,
    Permissions,
    SmsConnection,
    _now,
)


class DuplicateImportError(Exception):
    """An export with this content hash was recorded before."""

    def __init__(self, file_hash: str, existing_import_id: str | None = None):
        self.file_hash = file_hash
        self.existing_import_id = existing_import_id
        super().__init__(f"Export {file_hash[:12]} already imported")


class DuplicateTransactionError(Exception):
    """Raised when a ledger row with the same dedup_key already exists."""

    def __init__(self, dedup_key: str):
        self.dedup_key = dedup_key
        super().__init__(f"Transaction with dedup_key '{dedup_key}' already exists")


class PhoneNumberClaimedError(Exception):
    """Raised when an active connection already owns the phone number."""


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("PRAGMA journal_mode = WAL")
                self._conn = conn
            return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized unit of work: commit on success, roll back on error."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ── Migrations ──────────────────────────────────────────

    def _schema_version(self) -> int:
        with self._write() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                " version INTEGER PRIMARY KEY,"
                " description TEXT,"
                " applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
            )
        (version,) = self._fetchone(
            "SELECT COALESCE(MAX(version), 0) FROM schema_version"
        )
        return version

    def apply_migrations(self, migrations_dir: Path):
        """Run every NNN_name.sql newer than the recorded schema version.

        A file and its schema_version row commit together, so a failed
        migration is retried on the next call.
        """
        pending = sorted(
            (int(path.name.split("_", 1)[0]), path)
            for path in Path(migrations_dir).glob("*.sql")
        )
        with self._lock:
            current = self._schema_version()
            for version, path in pending:
                if version <= current:
                    continue
                # executescript() would commit mid-file
                statements = [s.strip() for s in path.read_text().split(";")]
                with self._write() as conn:
                    conn.execute("BEGIN")
                    for stmt in filter(None, statements):
                        conn.execute(stmt)
                    conn.execute(
                        "INSERT INTO schema_version (version, description)"
                        " VALUES (?, ?)",
                        (version, path.stem),
                    )

    # ── Imports ─────────────────────────────────────────────

    def insert_import(self, imp: Import) -> Import:
        """Record an export file.

        Raises:
            DuplicateImportError: The same content was imported before.
        """
        try:
            with self._write() as conn:
                conn.execute(
                    "INSERT INTO imports (id, user_id, file_name, file_hash,"
                    " file_size, record_count, status, error_message, created_at,"
                    " completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (imp.id, imp.user_id, imp.file_name, imp.file_hash,
                     imp.file_size, imp.record_count, imp.status,
                     imp.error_message, imp.created_at, imp.completed_at),
                )
        except sqlite3.IntegrityError as e:
            existing = self.get_import_by_hash(imp.file_hash)
            if existing is None:
                raise
            raise DuplicateImportError(imp.file_hash, existing.id) from e
        return imp

    def get_import_by_hash(self, file_hash: str) -> Import | None:
        row = self._fetchone(
            "SELECT * FROM imports WHERE file_hash = ?", (file_hash,)
        )
        return self._row_to_import(row) if row else None

    _IMPORT_STATUS_FIELDS = ("record_count", "error_message", "completed_at")

    def update_import_status(self, import_id: str, status: str, **fields):
        """Set status plus any of record_count / error_message / completed_at.

        completed_at defaults to now when status becomes "completed".
        """
        unknown = set(fields) - set(self._IMPORT_STATUS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown columns for update_import_status: {sorted(unknown)}")
        if status == "completed":
            fields.setdefault("completed_at", _now())

        assignments = ", ".join(
            ["status = ?"] + [f"{name} = ?" for name in fields]
        )
        with self._write() as conn:
            conn.execute(
                f"UPDATE imports SET {assignments} WHERE id = ?",
                [status, *fields.values(), import_id],
            )

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: LedgerTransaction) -> LedgerTransaction:
        """Insert a ledger row.

        Raises:
            DuplicateTransactionError: If txn.dedup_key is already taken.
        """
        try:
            with self._write() as conn:
                conn.execute(
                    "INSERT INTO transactions"
                    " (id, user_id, title, amount, type, category, payment_method,"
                    "  date, description, notes, source, confidence, original_sms,"
                    "  dedup_key, created_at, updated_at)"
                    " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (txn.id, txn.user_id, txn.title, txn.amount, txn.type,
                     txn.category, txn.payment_method, txn.date,
                     txn.description, txn.notes, txn.source, txn.confidence,
                     txn.original_sms, txn.dedup_key,
                     txn.created_at, txn.updated_at),
                )
        except sqlite3.IntegrityError as e:
            if txn.dedup_key and "dedup_key" in str(e):
                raise DuplicateTransactionError(txn.dedup_key) from e
            raise
        return txn

    def get_transaction(self, txn_id: str) -> LedgerTransaction | None:
        row = self._fetchone(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        )
        return self._row_to_transaction(row) if row else None

    def find_near_duplicate(
        self,
        user_id: str,
        amount: float,
        description: str,
        occurred_at: datetime,
        window: timedelta,
    ) -> LedgerTransaction | None:
        """Existing row for the same user with equal amount and description
        dated within ±window of occurred_at."""
        row = self._fetchone(
            "SELECT * FROM transactions"
            " WHERE user_id = ?"
            "   AND ABS(amount - ?) < 0.005"
            "   AND description = ?"
            "   AND date BETWEEN ? AND ?"
            " ORDER BY date DESC LIMIT 1",
            (user_id, amount, description,
             format_timestamp(occurred_at - window),
             format_timestamp(occurred_at + window)),
        )
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_source(
        self, user_id: str, source: str, limit: int = 50
    ) -> list[LedgerTransaction]:
        """Newest-created first."""
        rows = self._fetchall(
            "SELECT * FROM transactions WHERE user_id = ? AND source = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, source, limit),
        )
        return [self._row_to_transaction(r) for r in rows]

    def approve_pending_transaction(self, user_id: str, txn_id: str) -> bool:
        """Flip an sms_pending row to sms_import. False if no such pending row."""
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE transactions SET source = ?, updated_at = ?"
                " WHERE id = ? AND user_id = ? AND source = ?",
                (SOURCE_SMS_IMPORT, _now(), txn_id, user_id, SOURCE_SMS_PENDING),
            )
        return cur.rowcount > 0

    # ── SMS connections ─────────────────────────────────────

    def upsert_connection(self, connection: SmsConnection) -> SmsConnection:
        """Insert or replace the user's connection row.

        Raises:
            PhoneNumberClaimedError: If another user's active row holds the number.
        """
        try:
            with self._write() as conn:
                conn.execute(
                    "INSERT INTO sms_connections"
                    " (user_id, phone_number, is_active, permissions, settings,"
                    "  last_sync_time, total_processed, created_at, updated_at)"
                    " VALUES (?,?,?,?,?,?,?,?,?)"
                    " ON CONFLICT(user_id) DO UPDATE SET"
                    "  phone_number = excluded.phone_number,"
                    "  is_active = excluded.is_active,"
                    "  permissions = excluded.permissions,"
                    "  settings = excluded.settings,"
                    "  last_sync_time = excluded.last_sync_time,"
                    "  total_processed = excluded.total_processed,"
                    "  updated_at = excluded.updated_at",
                    (connection.user_id, connection.phone_number,
                     int(connection.is_active),
                     json.dumps(asdict(connection.permissions)),
                     json.dumps(asdict(connection.settings)),
                     connection.last_sync_time, connection.total_processed,
                     connection.created_at, connection.updated_at),
                )
        except sqlite3.IntegrityError as e:
            if "phone_number" in str(e):
                raise PhoneNumberClaimedError(
                    "Phone number already registered by another user"
                ) from e
            raise
        return connection

    def get_connection(self, user_id: str) -> SmsConnection | None:
        row = self._fetchone(
            "SELECT * FROM sms_connections WHERE user_id = ?", (user_id,)
        )
        return self._row_to_connection(row) if row else None

    def get_active_connection_by_phone(
        self, phone_number: str
    ) -> SmsConnection | None:
        row = self._fetchone(
            "SELECT * FROM sms_connections"
            " WHERE phone_number = ? AND is_active = 1",
            (phone_number,),
        )
        return self._row_to_connection(row) if row else None

    def delete_connection(self, user_id: str) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "DELETE FROM sms_connections WHERE user_id = ?", (user_id,)
            )
        return cur.rowcount > 0

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_import(row: sqlite3.Row) -> Import:
        return Import(
            id=row["id"], user_id=row["user_id"],
            file_name=row["file_name"], file_hash=row["file_hash"],
            file_size=row["file_size"], record_count=row["record_count"],
            status=row["status"], error_message=row["error_message"],
            created_at=row["created_at"], completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> LedgerTransaction:
        return LedgerTransaction(
            id=row["id"], user_id=row["user_id"], title=row["title"],
            amount=row["amount"], type=row["type"],
            category=row["category"],
            payment_method=row["payment_method"], date=row["date"],
            description=row["description"], notes=row["notes"],
            source=row["source"], confidence=row["confidence"],
            original_sms=row["original_sms"], dedup_key=row["dedup_key"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> SmsConnection:
        return SmsConnection(
            user_id=row["user_id"], phone_number=row["phone_number"],
            is_active=bool(row["is_active"]),
            permissions=Permissions(**json.loads(row["permissions"])),
            settings=ConnectionSettings(**json.loads(row["settings"])),
            last_sync_time=row["last_sync_time"],
            total_processed=row["total_processed"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )
