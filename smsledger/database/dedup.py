"""Duplicate detection for SMS-derived transactions.

Tiers (evaluated in order, first match wins):
1. Batch: an earlier candidate in the same import run already claimed
   the same amount + description within the window
2. Ledger: the user already has a ledger row with the same amount and
   description dated within the window

The window is ±24 hours around the candidate's date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from smsledger.database.models import LedgerTransaction
from smsledger.database.repository import Repository
from smsledger.parsers.base import ParsedTransaction

DUPLICATE_WINDOW = timedelta(hours=24)


@dataclass
class DedupResult:
    """Outcome of dedup check for a single candidate."""
    status: str  # "new" or "duplicate"
    tier: str | None = None  # "batch" or "ledger"
    matched_txn: LedgerTransaction | None = None
    matched_candidate: ParsedTransaction | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"


@dataclass
class BatchSeen:
    """Candidates already accepted earlier in the same batch."""
    window: timedelta = DUPLICATE_WINDOW
    _by_key: dict[tuple[int, str], list[ParsedTransaction]] = field(
        default_factory=dict
    )

    @staticmethod
    def _key(candidate: ParsedTransaction) -> tuple[int, str]:
        return int(round(candidate.amount * 100)), candidate.description

    def find(self, candidate: ParsedTransaction) -> ParsedTransaction | None:
        for earlier in self._by_key.get(self._key(candidate), []):
            if abs(earlier.occurred_at - candidate.occurred_at) <= self.window:
                return earlier
        return None

    def add(self, candidate: ParsedTransaction) -> None:
        self._by_key.setdefault(self._key(candidate), []).append(candidate)


class DedupEngine:
    """Run batch + ledger duplicate checks against the repository."""

    def __init__(self, repo: Repository, window: timedelta = DUPLICATE_WINDOW):
        self.repo = repo
        self.window = window

    def new_batch(self) -> BatchSeen:
        return BatchSeen(window=self.window)

    def check_ledger(
        self, user_id: str, candidate: ParsedTransaction
    ) -> LedgerTransaction | None:
        """Return an existing ledger row that duplicates the candidate."""
        return self.repo.find_near_duplicate(
            user_id,
            candidate.amount,
            candidate.description,
            candidate.occurred_at,
            self.window,
        )

    def deduplicate(
        self,
        user_id: str,
        candidate: ParsedTransaction,
        seen: BatchSeen | None = None,
    ) -> DedupResult:
        """Run both tiers on one candidate.

        The caller records accepted candidates in `seen` so later ones in the
        same batch collapse onto the first (newest) occurrence.
        """
        if seen is not None:
            earlier = seen.find(candidate)
            if earlier is not None:
                return DedupResult(
                    status="duplicate", tier="batch", matched_candidate=earlier
                )

        existing = self.check_ledger(user_id, candidate)
        if existing is not None:
            return DedupResult(
                status="duplicate", tier="ledger", matched_txn=existing
            )
        return DedupResult(status="new")
