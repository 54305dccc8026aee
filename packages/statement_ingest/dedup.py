"""Duplicate handling.

Two separate jobs:

* exact duplicates inside one import batch are removed by key;
* likely duplicates of records already in storage are scored and reported
  for review, never removed.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple, Union

import structlog
from rapidfuzz.distance import Levenshtein

from .models import PersistedTransaction, TransactionCandidate

logger = structlog.get_logger(__name__)

Record = Union[TransactionCandidate, PersistedTransaction]

DEFAULT_THRESHOLD = 0.95


def merchant_key(record: Record) -> str:
    """Merchant (or memo), lower-cased with all whitespace removed."""
    return re.sub(r"\s+", "", (record.merchant or record.memo or "").lower())


def _amount_key(amount: float) -> str:
    return f"{abs(amount):.2f}"


def dedup_key(candidate: TransactionCandidate, strict: bool = False) -> str:
    """Intra-batch identity.

    Strict mode compares ``date|time|amount``; default mode adds the
    merchant-or-memo key so same-day purchases of the same value at
    different merchants survive.
    """
    parts = [candidate.date, candidate.time or "", _amount_key(candidate.amount)]
    if not strict:
        parts.append(merchant_key(candidate))
    return "|".join(parts)


def storage_key(record: Record) -> str:
    """``date|merchant|amount`` used to skip rows already in storage."""
    return f"{record.date}|{merchant_key(record)}|{_amount_key(record.amount)}"


def fingerprint(candidate: TransactionCandidate) -> str:
    """Deterministic SHA256 of the default-mode key plus direction.

    Returns:
        64-character lowercase hex SHA256 hash.
    """
    raw = f"{dedup_key(candidate)}|{candidate.direction.value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def remove_duplicates(
    candidates: Sequence[TransactionCandidate], strict: bool = False
) -> Tuple[List[TransactionCandidate], int]:
    """Keep the first candidate per key; returns ``(unique, duplicate_count)``."""
    seen = set()
    unique: List[TransactionCandidate] = []
    duplicates = 0
    for candidate in candidates:
        key = dedup_key(candidate, strict)
        if key in seen:
            duplicates += 1
            logger.debug("duplicate_skipped", key=key)
            continue
        seen.add(key)
        unique.append(candidate)

    if duplicates:
        logger.info(
            "duplicates_removed",
            strict=strict,
            removed=duplicates,
            before=len(candidates),
            after=len(unique),
        )
    return unique, duplicates


# ---------------------------------------------------------------------------
# Fuzzy comparison against persisted records
# ---------------------------------------------------------------------------


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1.0 for equal strings, 0.8 when one contains the other, else edit-distance based."""
    left = (a or "").strip().lower()
    right = (b or "").strip().lower()
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    if left in right or right in left:
        return 0.8
    return 1.0 - Levenshtein.distance(left, right) / max(len(left), len(right))


def _moment(record: Record) -> Optional[datetime]:
    if not record.time:
        return None
    try:
        return datetime.fromisoformat(f"{record.date}T{record.time}")
    except ValueError:
        return None


def _day(record: Record) -> Optional[date]:
    try:
        return date.fromisoformat(record.date[:10])
    except ValueError:
        return None


def similarity_score(candidate: Record, existing: Record) -> float:
    """Likelihood in [0, 1] that two records are the same transaction."""
    if _amount_key(candidate.amount) != _amount_key(existing.amount):
        return 0.0

    score = 0.0
    left, right = _moment(candidate), _moment(existing)
    if left is not None and right is not None:
        minutes = abs((left - right).total_seconds()) / 60
        if minutes > 5:
            return 0.0
        score += 0.5
    else:
        left_day, right_day = _day(candidate), _day(existing)
        if left_day is None or right_day is None:
            if candidate.date != existing.date:
                return 0.0
            score += 0.4
        else:
            days = abs((left_day - right_day).days)
            if days == 0:
                score += 0.4
            elif days == 1:
                score += 0.2
            else:
                return 0.0

    score += 0.3

    if candidate.merchant and existing.merchant:
        similarity = string_similarity(candidate.merchant, existing.merchant)
    elif candidate.memo and existing.memo:
        similarity = string_similarity(candidate.memo, existing.memo)
    else:
        return score
    if similarity >= 0.9:
        return 1.0
    return score + similarity * 0.2


@dataclass(frozen=True)
class DuplicateMatch:
    candidate: TransactionCandidate
    existing: PersistedTransaction
    score: float


def find_duplicate_candidates(
    candidates: Sequence[TransactionCandidate],
    existing: Sequence[PersistedTransaction],
    threshold: float = DEFAULT_THRESHOLD,
) -> List[DuplicateMatch]:
    """Pairs scoring at least ``threshold``, best first."""
    matches = []
    for candidate in candidates:
        for record in existing:
            score = similarity_score(candidate, record)
            if score >= threshold:
                matches.append(DuplicateMatch(candidate, record, score))
    matches.sort(key=lambda m: m.score, reverse=True)
    if matches:
        logger.info("possible_duplicates_found", count=len(matches))
    return matches
