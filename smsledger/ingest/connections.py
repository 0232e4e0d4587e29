"""Real-time SMS ingestion: per-user connections and the webhook handler.

Each user has at most one SMS connection (registered phone number,
permissions, settings). A connection is active from registration until it
is deactivated; deactivation keeps the record. An active connection owns
its phone number: another user cannot register it meanwhile.

For every inbound SMS on an active number the manager decides between:
  ignored   not bank traffic, excluded by keyword, or not a transaction
  created   auto-approved and written to the ledger as sms_import
  pending   written to the ledger as sms_pending for manual approval
Connections live behind a ConnectionStore so the manager holds no state
of its own.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from smsledger.config import Config
from smsledger.database.models import (
    SOURCE_SMS_IMPORT,
    SOURCE_SMS_PENDING,
    ConnectionSettings,
    LedgerTransaction,
    Permissions,
    SmsConnection,
)
from smsledger.database.repository import (
    DuplicateTransactionError,
    PhoneNumberClaimedError,
    Repository,
)
from smsledger.ingest.pipeline import (
    _pct,
    build_ledger_transaction,
    qualifies_for_auto_approve,
)
from smsledger.parsers.base import ParsedTransaction, mask_phone
from smsledger.parsers.sms_parser import SmsParser

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
_PHONE_DECORATION = re.compile(r"[\s\-()]")


def normalize_phone_number(phone_number: str) -> str:
    """Strip spaces, dashes and parentheses."""
    return _PHONE_DECORATION.sub("", phone_number or "")


def is_valid_phone_number(phone_number: str) -> bool:
    """Loose international number check: optional '+', up to 16 digits."""
    return bool(_PHONE_RE.match(normalize_phone_number(phone_number)))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Stores ───────────────────────────────────────────────


class ConnectionStore(ABC):
    """Keyed by user id. Implementations return detached copies."""

    @abstractmethod
    def get(self, user_id: str) -> SmsConnection | None:
        """Return the user's connection, active or not."""

    @abstractmethod
    def put(self, connection: SmsConnection) -> None:
        """Create or replace the user's connection."""

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        """Hard-delete. Returns False if there was nothing to delete."""

    @abstractmethod
    def find_active_by_phone(self, phone_number: str) -> SmsConnection | None:
        """Return the active connection that owns phone_number."""


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self):
        self._connections: dict[str, SmsConnection] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> SmsConnection | None:
        with self._lock:
            conn = self._connections.get(user_id)
            return copy.deepcopy(conn) if conn else None

    def put(self, connection: SmsConnection) -> None:
        with self._lock:
            for other in self._connections.values():
                if (
                    connection.is_active and other.is_active
                    and other.user_id != connection.user_id
                    and other.phone_number == connection.phone_number
                ):
                    raise PhoneNumberClaimedError(
                        "Phone number already registered by another user"
                    )
            self._connections[connection.user_id] = copy.deepcopy(connection)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._connections.pop(user_id, None) is not None

    def find_active_by_phone(self, phone_number: str) -> SmsConnection | None:
        with self._lock:
            for conn in self._connections.values():
                if conn.is_active and conn.phone_number == phone_number:
                    return copy.deepcopy(conn)
        return None


class SqliteConnectionStore(ConnectionStore):
    """Connections persisted in the sms_connections table."""

    def __init__(self, repo: Repository):
        self.repo = repo

    def get(self, user_id: str) -> SmsConnection | None:
        return self.repo.get_connection(user_id)

    def put(self, connection: SmsConnection) -> None:
        self.repo.upsert_connection(connection)

    def delete(self, user_id: str) -> bool:
        return self.repo.delete_connection(user_id)

    def find_active_by_phone(self, phone_number: str) -> SmsConnection | None:
        return self.repo.get_active_connection_by_phone(phone_number)


# ── Results ──────────────────────────────────────────────


@dataclass
class RegisterResult:
    success: bool
    webhook_url: str | None = None
    error: str | None = None


@dataclass
class InboundResult:
    """Outcome of one webhook-delivered SMS."""
    success: bool
    status: str  # unregistered, ignored, created, pending, duplicate, error
    transaction_created: bool = False
    transaction_id: str | None = None
    confidence: float | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "status": self.status,
            "transactionCreated": self.transaction_created,
        }
        if self.transaction_id:
            data["transactionId"] = self.transaction_id
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.error:
            data["error"] = self.error
        return data


# ── Manager ──────────────────────────────────────────────


class ConnectionManager:
    """Register phone numbers and route webhook SMS into the ledger.

    Args:
        store: Where connections live.
        repo: Ledger repository for created and pending rows.
        parser: SmsParser for inbound bodies.
        config: Bank keyword list, webhook path, payment method.
        base_url: Public origin used to build the webhook URL.
        on_transaction: Called with (user_id, candidate) after an
            auto-approved transaction is written.
    """

    def __init__(
        self,
        store: ConnectionStore,
        repo: Repository,
        parser: SmsParser,
        config: Config,
        base_url: str = "",
        on_transaction: Callable[[str, ParsedTransaction], None] | None = None,
    ):
        self.store = store
        self.repo = repo
        self.parser = parser
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.on_transaction = on_transaction

    @property
    def webhook_url(self) -> str:
        return f"{self.base_url}{self.config.webhook_path}"

    def register(
        self,
        user_id: str,
        phone_number: str,
        permissions: Permissions,
        settings: ConnectionSettings,
    ) -> RegisterResult:
        """Create or overwrite the user's connection in the active state."""
        if not is_valid_phone_number(phone_number):
            return RegisterResult(success=False, error="Invalid phone number format")
        phone = normalize_phone_number(phone_number)

        owner = self.store.find_active_by_phone(phone)
        if owner is not None and owner.user_id != user_id:
            return RegisterResult(
                success=False,
                error="Phone number already registered by another user",
            )

        connection = SmsConnection(
            user_id=user_id,
            phone_number=phone,
            permissions=permissions,
            settings=settings,
            is_active=True,
            total_processed=0,
        )
        try:
            self.store.put(connection)
        except PhoneNumberClaimedError as e:
            return RegisterResult(success=False, error=str(e))

        logger.info("Registered SMS connection for %s (%s)", user_id, mask_phone(phone))
        return RegisterResult(success=True, webhook_url=self.webhook_url)

    def get_status(self, user_id: str) -> SmsConnection | None:
        return self.store.get(user_id)

    def update_settings(self, user_id: str, partial: dict) -> bool:
        """Merge partial settings into the user's connection.

        Raises:
            ValueError: On unknown names, null values or an out-of-range
                min_confidence; the stored settings are left untouched.
        """
        connection = self.store.get(user_id)
        if connection is None:
            return False
        connection.settings = connection.settings.merged(partial)
        connection.updated_at = _now()
        self.store.put(connection)
        return True

    def deactivate(self, user_id: str) -> bool:
        """Soft-delete: the record stays, the phone number is released."""
        connection = self.store.get(user_id)
        if connection is None:
            return False
        connection.is_active = False
        connection.updated_at = _now()
        self.store.put(connection)
        logger.info("Deactivated SMS connection for %s", user_id)
        return True

    # ── Inbound SMS ──────────────────────────────────────

    def is_bank_sms(self, sender: str, message: str) -> bool:
        sender_lower = (sender or "").lower()
        message_lower = (message or "").lower()
        return any(
            k in sender_lower or k in message_lower
            for k in self.config.bank_keywords
        )

    def handle_inbound_sms(
        self,
        phone_number: str,
        message: str,
        sender: str,
        timestamp: datetime | None = None,
        message_id: str | None = None,
    ) -> InboundResult:
        """Process one webhook-delivered SMS. Never raises."""
        try:
            return self._handle(phone_number, message, sender, timestamp)
        except Exception as e:
            logger.exception(
                "SMS processing error (message %s, phone %s)",
                message_id, mask_phone(phone_number),
            )
            return InboundResult(success=False, status="error", error=str(e))

    def _handle(
        self,
        phone_number: str,
        message: str,
        sender: str,
        timestamp: datetime | None,
    ) -> InboundResult:
        connection = self.store.find_active_by_phone(
            normalize_phone_number(phone_number)
        )
        if connection is None:
            return InboundResult(
                success=False,
                status="unregistered",
                error="Phone number not registered or inactive",
            )

        if not self.is_bank_sms(sender, message):
            return InboundResult(success=True, status="ignored")

        settings = connection.settings
        message_lower = (message or "").lower()
        if any(k.lower() in message_lower for k in settings.exclude_keywords if k):
            logger.debug("SMS for %s matched an exclude keyword", connection.user_id)
            return InboundResult(success=True, status="ignored")

        candidate = self.parser.parse(message, received_at=timestamp)
        if candidate is None:
            return InboundResult(success=True, status="ignored")

        if candidate.confidence >= settings.min_confidence and self._auto_approves(
            candidate, settings
        ):
            return self._create(connection, candidate)
        return self._store_pending(connection, candidate)

    @staticmethod
    def _auto_approves(
        candidate: ParsedTransaction, settings: ConnectionSettings
    ) -> bool:
        if not qualifies_for_auto_approve(candidate.confidence, settings.auto_approve):
            return False
        if settings.categories and candidate.category not in settings.categories:
            return False
        return True

    def _create(
        self, connection: SmsConnection, candidate: ParsedTransaction
    ) -> InboundResult:
        txn = build_ledger_transaction(
            candidate, connection.user_id, SOURCE_SMS_IMPORT,
            notes=f"Auto-imported from SMS ({_pct(candidate.confidence)} confidence)",
            payment_method=self.config.payment_method,
        )
        if not self._insert(txn):
            return self._duplicate(candidate)

        connection.total_processed += 1
        connection.last_sync_time = _now()
        connection.updated_at = connection.last_sync_time
        self.store.put(connection)

        logger.info(
            "Created transaction %s for %s from SMS (%.2f confidence)",
            txn.id, connection.user_id, candidate.confidence,
        )
        if self.on_transaction is not None:
            try:
                self.on_transaction(connection.user_id, candidate)
            except Exception as e:
                logger.warning("Transaction notification failed: %s", e)

        return InboundResult(
            success=True,
            status="created",
            transaction_created=True,
            transaction_id=txn.id,
            confidence=candidate.confidence,
        )

    def _store_pending(
        self, connection: SmsConnection, candidate: ParsedTransaction
    ) -> InboundResult:
        txn = build_ledger_transaction(
            candidate, connection.user_id, SOURCE_SMS_PENDING,
            notes=f"Pending review - SMS import ({_pct(candidate.confidence)} confidence)",
            payment_method=self.config.payment_method,
        )
        if not self._insert(txn):
            return self._duplicate(candidate)
        return InboundResult(
            success=True,
            status="pending",
            transaction_id=txn.id,
            confidence=candidate.confidence,
        )

    def _insert(self, txn: LedgerTransaction) -> bool:
        """False when the same SMS already produced a ledger row."""
        try:
            self.repo.insert_transaction(txn)
        except DuplicateTransactionError:
            logger.info("Duplicate SMS delivery ignored for %s", txn.user_id)
            return False
        return True

    @staticmethod
    def _duplicate(candidate: ParsedTransaction) -> InboundResult:
        return InboundResult(
            success=True, status="duplicate", confidence=candidate.confidence
        )

    # ── Pending review ───────────────────────────────────

    def pending_transactions(
        self, user_id: str, limit: int = 100
    ) -> list[LedgerTransaction]:
        return self.repo.get_transactions_by_source(
            user_id, SOURCE_SMS_PENDING, limit=limit
        )

    def approve_pending(self, user_id: str, transaction_id: str) -> bool:
        approved = self.repo.approve_pending_transaction(user_id, transaction_id)
        if approved:
            logger.info("Approved pending transaction %s for %s", transaction_id, user_id)
        return approved
