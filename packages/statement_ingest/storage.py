"""Storage contract consumed by the pipeline, plus an in-memory implementation.

The pipeline never writes anything except through ``add_transaction``; all
other calls are reads of reference data.
"""

from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from .models import (
    Category,
    CategoryRule,
    DateRange,
    Direction,
    ExclusionPattern,
    PersistedTransaction,
    TransactionCandidate,
)

logger = structlog.get_logger(__name__)


class TransactionStore(Protocol):
    def get_rules(self, active_only: bool = True) -> List[CategoryRule]: ...

    def get_categories(self) -> List[Category]: ...

    def get_exclusion_patterns(self, active_only: bool = True) -> List[ExclusionPattern]: ...

    def get_transactions(self, date_range: Optional[DateRange] = None) -> List[PersistedTransaction]: ...

    def add_transaction(self, candidate: TransactionCandidate) -> int: ...


class InMemoryTransactionStore:
    """Dict-backed store used by the API by default and by tests."""

    def __init__(
        self,
        categories: Optional[Sequence[Category]] = None,
        rules: Optional[Sequence[CategoryRule]] = None,
        exclusion_patterns: Optional[Sequence[ExclusionPattern]] = None,
        transactions: Optional[Sequence[PersistedTransaction]] = None,
    ):
        self.categories: List[Category] = list(categories or [])
        self.rules: List[CategoryRule] = list(rules or [])
        self.exclusion_patterns: List[ExclusionPattern] = list(exclusion_patterns or [])
        self.transactions: Dict[int, PersistedTransaction] = {
            t.id: t for t in (transactions or [])
        }
        self._next_id = max(self.transactions, default=0) + 1

    def get_rules(self, active_only: bool = True) -> List[CategoryRule]:
        rules = [r for r in self.rules if r.is_active or not active_only]
        return sorted(rules, key=lambda r: (-r.priority, r.id))

    def get_categories(self) -> List[Category]:
        return list(self.categories)

    def get_exclusion_patterns(self, active_only: bool = True) -> List[ExclusionPattern]:
        return [p for p in self.exclusion_patterns if p.is_active or not active_only]

    def get_transactions(self, date_range: Optional[DateRange] = None) -> List[PersistedTransaction]:
        records = sorted(self.transactions.values(), key=lambda t: (t.date, t.time or "", t.id))
        if date_range is None:
            return records
        return [t for t in records if date_range.contains(t.date)]

    def add_transaction(self, candidate: TransactionCandidate) -> int:
        record_id = self._next_id
        self._next_id += 1
        self.transactions[record_id] = PersistedTransaction(
            id=record_id,
            date=candidate.date,
            time=candidate.time,
            amount=candidate.amount,
            direction=Direction(candidate.direction),
            merchant=candidate.merchant,
            memo=candidate.memo,
            category_id=candidate.category_id,
            source_tag=candidate.source_tag,
        )
        logger.debug("transaction_added", id=record_id, date=candidate.date)
        return record_id
