"""Batch SMS import pipeline: parse → filter → dedup → route.

Every candidate that clears the confidence threshold ends in one of three
outcomes:
  imported          written to the ledger (auto-approve on, confidence ≥ 0.8)
  pending_review    returned to the caller with its raw SMS, not written
  skipped_duplicate matches an earlier candidate in the batch or a ledger
                    row within ±24h

The 0.8 auto-approve floor is fixed and independent of the caller's
min_confidence. A failure while handling one candidate is recorded in
`errors` and the batch carries on.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from smsledger.database.dedup import BatchSeen, DedupEngine
from smsledger.database.models import (
    SOURCE_SMS_IMPORT,
    LedgerTransaction,
)
from smsledger.database.queries import summarize_imports
from smsledger.database.repository import DuplicateTransactionError, Repository
from smsledger.parsers.base import (
    ParsedTransaction,
    compute_dedup_key,
    format_timestamp,
)
from smsledger.parsers.sms_parser import SmsParser

logger = logging.getLogger(__name__)

AUTO_APPROVE_CONFIDENCE = 0.8
DEFAULT_MIN_CONFIDENCE = 0.7
DEFAULT_PAYMENT_METHOD = "Bank Transfer"

IMPORTED = "imported"
PENDING_REVIEW = "pending_review"
SKIPPED_DUPLICATE = "skipped_duplicate"


def qualifies_for_auto_approve(confidence: float, auto_approve: bool) -> bool:
    return auto_approve and confidence >= AUTO_APPROVE_CONFIDENCE


def build_ledger_transaction(
    candidate: ParsedTransaction,
    user_id: str,
    source: str,
    notes: str,
    payment_method: str = DEFAULT_PAYMENT_METHOD,
) -> LedgerTransaction:
    """Ledger row for a parsed SMS."""
    return LedgerTransaction(
        user_id=user_id,
        title=candidate.merchant or candidate.description,
        amount=candidate.amount,
        type=candidate.ledger_type,
        category=candidate.category or "Other",
        payment_method=payment_method,
        date=format_timestamp(candidate.occurred_at),
        description=candidate.description,
        notes=notes,
        source=source,
        confidence=candidate.confidence,
        original_sms=candidate.raw_text,
        dedup_key=compute_dedup_key(
            user_id, candidate.amount, candidate.occurred_at,
            candidate.description,
        ),
    )


def _pct(confidence: float) -> str:
    return f"{confidence * 100:.1f}%"


@dataclass
class CandidateOutcome:
    """What happened to one candidate."""
    candidate: ParsedTransaction
    status: str  # imported / pending_review / skipped_duplicate
    transaction_id: str | None = None
    duplicate_of: str | None = None

    def to_dict(self, payment_method: str = DEFAULT_PAYMENT_METHOD) -> dict:
        c = self.candidate
        data = {
            "title": c.merchant or c.description,
            "amount": c.amount,
            "type": c.ledger_type,
            "category": c.category,
            "merchant": c.merchant,
            "paymentMethod": payment_method,
            "date": format_timestamp(c.occurred_at),
            "description": c.description,
            "confidence": c.confidence,
            "source": SOURCE_SMS_IMPORT,
            "status": self.status,
        }
        if self.transaction_id:
            data["id"] = self.transaction_id
        if self.status == PENDING_REVIEW:
            data["rawSMS"] = c.raw_text
        if self.duplicate_of:
            data["duplicateOf"] = self.duplicate_of
        return data


@dataclass
class ImportResult:
    """Counts and per-candidate outcomes of one batch import."""
    total: int = 0
    high_confidence: int = 0
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    transactions: list[CandidateOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def pending(self) -> int:
        return sum(1 for t in self.transactions if t.status == PENDING_REVIEW)

    @property
    def summary(self) -> str:
        return (
            f"Processed {self.total} SMS messages. "
            f"{self.imported} transactions imported, "
            f"{self.skipped} duplicates skipped."
        )

    def record(self, outcome: CandidateOutcome) -> None:
        if outcome.status == IMPORTED:
            self.imported += 1
        elif outcome.status == SKIPPED_DUPLICATE:
            self.skipped += 1
        self.transactions.append(outcome)

    def to_dict(self, payment_method: str = DEFAULT_PAYMENT_METHOD) -> dict:
        return {
            "total": self.total,
            "highConfidence": self.high_confidence,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "transactions": [t.to_dict(payment_method) for t in self.transactions],
            "cancelled": self.cancelled,
        }


class ImportPipeline:
    """Orchestrate parse → confidence filter → dedup → route for SMS batches.

    Args:
        repo: Ledger repository.
        parser: SmsParser used for raw messages.
        dedup: Dedup engine; built on repo when omitted.
        payment_method: Recorded on every ledger row this pipeline writes.
    """

    def __init__(
        self,
        repo: Repository,
        parser: SmsParser,
        dedup: DedupEngine | None = None,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ):
        self.repo = repo
        self.parser = parser
        self.dedup = dedup or DedupEngine(repo)
        self.payment_method = payment_method

    def import_batch(
        self,
        user_id: str,
        messages: Iterable[str],
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        auto_approve: bool = False,
        cancel: threading.Event | None = None,
        seen: BatchSeen | None = None,
    ) -> ImportResult:
        """Parse raw SMS bodies and route every resulting candidate."""
        candidates = self.parser.parse_many(messages)
        return self.process_candidates(
            user_id, candidates,
            min_confidence=min_confidence,
            auto_approve=auto_approve,
            cancel=cancel,
            seen=seen,
        )

    def process_candidates(
        self,
        user_id: str,
        candidates: list[ParsedTransaction],
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        auto_approve: bool = False,
        cancel: threading.Event | None = None,
        seen: BatchSeen | None = None,
    ) -> ImportResult:
        """Route already-parsed candidates, newest first.

        Cancellation is checked between candidates only, so a cancelled run
        leaves a consistent prefix of outcomes.

        Pass `seen` to share in-batch dedup state across several calls, as
        when one export is fed through in chunks.
        """
        ordered = sorted(candidates, key=lambda c: c.occurred_at, reverse=True)
        eligible = [c for c in ordered if c.confidence >= min_confidence]
        result = ImportResult(total=len(ordered), high_confidence=len(eligible))
        if seen is None:
            seen = self.dedup.new_batch()

        for candidate in eligible:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                logger.info(
                    "Import cancelled after %d of %d candidate(s)",
                    len(result.transactions) + len(result.errors), len(eligible),
                )
                break
            try:
                outcome = self._route(user_id, candidate, auto_approve, seen)
            except Exception as e:
                logger.warning("Failed to process SMS candidate: %s", e)
                result.errors.append(f"Failed to process transaction: {e}")
                continue
            result.record(outcome)

        logger.info(
            "SMS import for %s: total=%d eligible=%d imported=%d pending=%d"
            " skipped=%d errors=%d",
            user_id, result.total, result.high_confidence, result.imported,
            result.pending, result.skipped, len(result.errors),
        )
        return result

    def _route(
        self,
        user_id: str,
        candidate: ParsedTransaction,
        auto_approve: bool,
        seen: BatchSeen,
    ) -> CandidateOutcome:
        dedup = self.dedup.deduplicate(user_id, candidate, seen)
        if dedup.is_duplicate:
            return CandidateOutcome(
                candidate=candidate,
                status=SKIPPED_DUPLICATE,
                duplicate_of=dedup.matched_txn.id if dedup.matched_txn else None,
            )

        if not qualifies_for_auto_approve(candidate.confidence, auto_approve):
            seen.add(candidate)
            return CandidateOutcome(candidate=candidate, status=PENDING_REVIEW)

        txn = build_ledger_transaction(
            candidate, user_id, SOURCE_SMS_IMPORT,
            notes=f"Imported from SMS (Confidence: {_pct(candidate.confidence)})",
            payment_method=self.payment_method,
        )
        try:
            self.repo.insert_transaction(txn)
        except DuplicateTransactionError:
            # Lost a race with a concurrent import of the same SMS.
            seen.add(candidate)
            return CandidateOutcome(candidate=candidate, status=SKIPPED_DUPLICATE)
        seen.add(candidate)
        return CandidateOutcome(
            candidate=candidate, status=IMPORTED, transaction_id=txn.id
        )

    def import_history(
        self, user_id: str, limit: int = 50, now: datetime | None = None
    ) -> dict:
        """Latest SMS-imported ledger rows plus summary stats."""
        txns = self.repo.get_transactions_by_source(
            user_id, SOURCE_SMS_IMPORT, limit=limit
        )
        stats = summarize_imports(txns, now or datetime.now(timezone.utc))
        return {"transactions": txns, "stats": stats}
