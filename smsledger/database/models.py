"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly,
except that SmsConnection keeps permissions/settings as nested dataclasses
(stored as JSON). All primary keys are TEXT (UUID strings from uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from uuid import uuid4

# Ledger `source` values
SOURCE_MANUAL = "manual"
SOURCE_SMS_IMPORT = "sms_import"
SOURCE_SMS_PENDING = "sms_pending"
SOURCE_API = "api"
SOURCE_RECURRING = "recurring"

# Lowest min_confidence a connection may be configured with
MIN_CONFIDENCE_FLOOR = 0.5


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Import:
    """One SMS export file picked up by the watcher."""
    file_name: str
    file_hash: str
    user_id: str
    id: str = field(default_factory=_new_id)
    file_size: int | None = None
    record_count: int | None = None
    status: str = "pending"
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None


@dataclass
class LedgerTransaction:
    user_id: str
    title: str
    amount: float
    type: str              # "income" or "expense"
    category: str
    payment_method: str
    date: str              # fixed-width UTC timestamp, see parsers.base.format_timestamp
    id: str = field(default_factory=_new_id)
    description: str = ""
    notes: str = ""
    source: str = SOURCE_MANUAL
    confidence: float | None = None
    original_sms: str | None = None
    dedup_key: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "amount": self.amount,
            "type": self.type,
            "category": self.category,
            "paymentMethod": self.payment_method,
            "date": self.date,
            "description": self.description,
            "notes": self.notes,
            "source": self.source,
            "confidence": self.confidence,
            "originalSMS": self.original_sms,
            "createdAt": self.created_at,
        }


@dataclass
class Permissions:
    read_sms: bool = False
    auto_process: bool = False
    real_time_sync: bool = False


@dataclass
class ConnectionSettings:
    auto_approve: bool = False
    min_confidence: float = 0.7
    categories: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)

    def merged(self, partial: dict) -> ConnectionSettings:
        """Return a copy with the known keys from partial applied.

        Raises:
            ValueError: On unknown keys, null values, or a min_confidence
                outside [0.5, 1].
        """
        known = {f.name for f in fields(self)}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        nulls = sorted(k for k, v in partial.items() if v is None)
        if nulls:
            raise ValueError(f"Settings cannot be null: {nulls}")
        if "min_confidence" in partial and not (
            MIN_CONFIDENCE_FLOOR <= partial["min_confidence"] <= 1.0
        ):
            raise ValueError(
                f"min_confidence must be between {MIN_CONFIDENCE_FLOOR} and 1"
            )
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(partial)
        return ConnectionSettings(**values)


@dataclass
class SmsConnection:
    user_id: str
    phone_number: str
    permissions: Permissions = field(default_factory=Permissions)
    settings: ConnectionSettings = field(default_factory=ConnectionSettings)
    is_active: bool = True
    last_sync_time: str = field(default_factory=_now)
    total_processed: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "phoneNumber": self.phone_number,
            "isActive": self.is_active,
            "permissions": {
                "readSMS": self.permissions.read_sms,
                "autoProcess": self.permissions.auto_process,
                "realTimeSync": self.permissions.real_time_sync,
            },
            "settings": {
                "autoApprove": self.settings.auto_approve,
                "minConfidence": self.settings.min_confidence,
                "categories": list(self.settings.categories),
                "excludeKeywords": list(self.settings.exclude_keywords),
            },
            "lastSyncTime": self.last_sync_time,
            "totalProcessed": self.total_processed,
        }
