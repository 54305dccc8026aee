"""Import orchestration.

Extractor -> Classifier -> Normalizer (per row) -> Deduplicator (batch) ->
filters -> Categorizer (batch). Nothing is written until
``persist_candidates`` is called, so a caller can abort an import simply by
dropping the result.
"""

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from structlog.contextvars import bound_contextvars

from .categorizer import Categorizer
from .column_classifier import classify_columns
from .config import PipelineSettings, get_pipeline_settings
from .dedup import DuplicateMatch, find_duplicate_candidates, remove_duplicates, storage_key
from .errors import ExtractionError, PersistenceError
from .excel_parser import parse_statement_file
from .issuers import classify_source
from .models import (
    Category,
    CategoryRule,
    ColumnRoleMapping,
    DateRange,
    Direction,
    ExclusionPattern,
    TransactionCandidate,
)
from .normalizer import apply_mapping
from .storage import TransactionStore

logger = structlog.get_logger(__name__)


class ProgressTracker:
    """Reports per-row progress in 10% steps."""

    def __init__(self, total: int, callback: Optional[Callable[[int], None]] = None):
        self.total = total
        self.current = 0
        self.callback = callback
        self.last_percent = 0

    def update(self, increment: int = 1):
        self.current += increment
        if not self.total:
            return
        percent = int((self.current / self.total) * 100)

        if percent != self.last_percent and percent % 10 == 0:
            self.last_percent = percent
            if self.callback:
                self.callback(percent)
            else:
                logger.debug("import_progress", percent=percent)

    def finish(self):
        if self.callback and self.last_percent != 100:
            self.callback(100)


@dataclass(frozen=True)
class ReferenceSnapshot:
    """Rules, categories and exclusion patterns read once per import."""

    rules: Tuple[CategoryRule, ...] = ()
    categories: Tuple[Category, ...] = ()
    exclusion_patterns: Tuple[ExclusionPattern, ...] = ()

    @classmethod
    def load(cls, store: TransactionStore) -> "ReferenceSnapshot":
        return cls(
            rules=tuple(store.get_rules(active_only=True)),
            categories=tuple(c for c in store.get_categories() if not c.exclude_from_stats),
            exclusion_patterns=tuple(store.get_exclusion_patterns(active_only=True)),
        )


@dataclass
class ImportResult:
    candidates: List[TransactionCandidate] = field(default_factory=list)
    total_rows_seen: int = 0
    duplicates_removed: int = 0
    rows_rejected: int = 0
    rejection_reasons: Dict[str, int] = field(default_factory=dict)
    excluded_by_pattern: int = 0
    income_excluded: int = 0
    issuer: Optional[str] = None
    sheet_name: Optional[str] = None
    mapping: Optional[ColumnRoleMapping] = None
    duplicate_matches: List[DuplicateMatch] = field(default_factory=list)
    failed_files: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def matches_exclusion(candidate: TransactionCandidate, pattern: ExclusionPattern) -> bool:
    """Case-insensitive substring test against the field named by ``pattern.kind``."""
    needle = pattern.pattern.strip().lower()
    if not needle:
        return False
    if pattern.kind == "memo":
        fields = [candidate.memo]
    elif pattern.kind == "account":
        fields = [candidate.source_tag]
    elif pattern.kind == "both":
        fields = [candidate.merchant, candidate.memo]
    else:
        fields = [candidate.merchant]
    return any(needle in value.lower() for value in fields if value)


def filter_excluded(
    candidates: Sequence[TransactionCandidate], patterns: Sequence[ExclusionPattern]
) -> Tuple[List[TransactionCandidate], int]:
    active = [p for p in patterns if p.is_active]
    kept = [c for c in candidates if not any(matches_exclusion(c, p) for p in active)]
    return kept, len(candidates) - len(kept)


def filter_income(
    candidates: Sequence[TransactionCandidate],
) -> Tuple[List[TransactionCandidate], int]:
    kept = [c for c in candidates if c.direction != Direction.INCOME]
    return kept, len(candidates) - len(kept)


def batch_date_range(
    candidates: Sequence[TransactionCandidate], pad_days: int = 0
) -> Optional[DateRange]:
    """Smallest range covering every candidate date, widened by ``pad_days``."""
    if not candidates:
        return None
    start = date.fromisoformat(min(c.date for c in candidates))
    end = date.fromisoformat(max(c.date for c in candidates))
    pad = timedelta(days=pad_days)
    return DateRange(start=(start - pad).isoformat(), end=(end + pad).isoformat())


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class _FileOutcome:
    candidates: List[TransactionCandidate]
    rows: int
    rejected: Dict[str, int]
    issuer: Optional[str]
    sheet_name: str
    mapping: ColumnRoleMapping


def _extract_file(
    content: bytes,
    filename: Optional[str],
    settings: PipelineSettings,
    password: Optional[str],
    progress_callback: Optional[Callable[[int], None]],
    today: Optional[date],
) -> _FileOutcome:
    sheet = parse_statement_file(content, filename, password=password, settings=settings)
    mapping = classify_columns(sheet, settings, today=today)

    tracker = ProgressTracker(len(sheet.rows), progress_callback)
    report = apply_mapping(
        sheet.rows, mapping, issuer=sheet.issuer, today=today, tracker=tracker
    )
    tracker.finish()
    return _FileOutcome(
        candidates=report.candidates,
        rows=len(sheet.rows),
        rejected=dict(report.skipped),
        issuer=sheet.issuer,
        sheet_name=sheet.sheet_name,
        mapping=mapping,
    )


def _finish_batch(
    result: ImportResult,
    candidates: List[TransactionCandidate],
    store: TransactionStore,
    settings: PipelineSettings,
    strict: bool,
    exclude_income: bool,
) -> ImportResult:
    snapshot = ReferenceSnapshot.load(store)

    unique, result.duplicates_removed = remove_duplicates(candidates, strict=strict)
    if exclude_income:
        unique, result.income_excluded = filter_income(unique)
    unique, result.excluded_by_pattern = filter_excluded(unique, snapshot.exclusion_patterns)

    categorizer = Categorizer(snapshot.rules, snapshot.categories)
    for candidate, category_id in zip(unique, categorizer.categorize_many(unique)):
        candidate.category_id = category_id
    result.candidates = unique

    date_range = batch_date_range(unique, pad_days=1)
    if date_range is not None:
        existing = store.get_transactions(date_range)
        result.duplicate_matches = find_duplicate_candidates(
            unique, existing, settings.FUZZY_THRESHOLD
        )

    logger.info(
        "import_complete",
        rows=result.total_rows_seen,
        candidates=len(result.candidates),
        duplicates_removed=result.duplicates_removed,
        rows_rejected=result.rows_rejected,
        income_excluded=result.income_excluded,
        excluded_by_pattern=result.excluded_by_pattern,
        possible_duplicates=len(result.duplicate_matches),
    )
    return result


def run_import(
    content: bytes,
    filename: Optional[str] = None,
    *,
    store: TransactionStore,
    settings: Optional[PipelineSettings] = None,
    password: Optional[str] = None,
    strict: Optional[bool] = None,
    exclude_income: Optional[bool] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
    today: Optional[date] = None,
) -> ImportResult:
    """Turn one statement file into categorized, deduplicated candidates.

    Raises ExtractionError when the file holds no usable table. Nothing is
    written to ``store``.
    """
    settings = settings or get_pipeline_settings()
    strict = settings.STRICT_DEDUP if strict is None else strict
    exclude_income = settings.EXCLUDE_INCOME if exclude_income is None else exclude_income

    with bound_contextvars(filename=filename):
        outcome = _extract_file(content, filename, settings, password, progress_callback, today)
        with bound_contextvars(issuer=outcome.issuer):
            result = ImportResult(
                total_rows_seen=outcome.rows,
                rows_rejected=sum(outcome.rejected.values()),
                rejection_reasons=outcome.rejected,
                issuer=outcome.issuer,
                sheet_name=outcome.sheet_name,
                mapping=outcome.mapping,
            )
            return _finish_batch(
                result, outcome.candidates, store, settings, strict, exclude_income
            )


def run_import_many(
    files: Sequence[Tuple[bytes, Optional[str]]],
    *,
    store: TransactionStore,
    settings: Optional[PipelineSettings] = None,
    password: Optional[str] = None,
    strict: Optional[bool] = None,
    exclude_income: Optional[bool] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
    today: Optional[date] = None,
) -> ImportResult:
    """Import several ``(content, filename)`` files as one batch.

    A file that fails extraction is logged and skipped; ExtractionError is
    raised only when every file fails.
    """
    settings = settings or get_pipeline_settings()
    strict = settings.STRICT_DEDUP if strict is None else strict
    exclude_income = settings.EXCLUDE_INCOME if exclude_income is None else exclude_income

    result = ImportResult()
    candidates: List[TransactionCandidate] = []
    for index, (content, filename) in enumerate(files):
        label = filename or f"file_{index + 1}"
        with bound_contextvars(filename=label):
            try:
                outcome = _extract_file(
                    content, filename, settings, password, progress_callback, today
                )
            except ExtractionError as e:
                logger.warning("file_skipped", error=str(e))
                result.failed_files[label] = str(e)
                continue
        candidates.extend(outcome.candidates)
        result.total_rows_seen += outcome.rows
        for reason, count in outcome.rejected.items():
            result.rejection_reasons[reason] = result.rejection_reasons.get(reason, 0) + count
        result.issuer = result.issuer or outcome.issuer

    if len(result.failed_files) == len(files):
        raise ExtractionError(
            "No file could be imported: "
            + "; ".join(f"{name}: {error}" for name, error in result.failed_files.items())
        )

    result.rows_rejected = sum(result.rejection_reasons.values())
    return _finish_batch(result, candidates, store, settings, strict, exclude_income)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass
class PersistReport:
    inserted_ids: List[int] = field(default_factory=list)
    skipped_existing: int = 0


def persist_candidates(
    candidates: Sequence[TransactionCandidate],
    store: TransactionStore,
    *,
    skip_existing: Optional[bool] = None,
    settings: Optional[PipelineSettings] = None,
) -> PersistReport:
    """Write candidates one at a time, in order.

    When ``skip_existing`` is set (default ``settings.SKIP_EXISTING``), a
    candidate whose date/merchant/amount key is already stored, or was
    written earlier in this call, is skipped. Any storage failure raises
    PersistenceError carrying the full list.
    """
    settings = settings or get_pipeline_settings()
    if skip_existing is None:
        skip_existing = settings.SKIP_EXISTING
    report = PersistReport()
    if not candidates:
        return report

    known = set()
    if skip_existing:
        try:
            stored = store.get_transactions(batch_date_range(candidates))
        except Exception as e:
            raise PersistenceError(candidates, [], 0, e) from e
        known = {storage_key(t) for t in stored}

    for index, candidate in enumerate(candidates):
        key = storage_key(candidate)
        if skip_existing and key in known:
            report.skipped_existing += 1
            continue
        record = replace(candidate, source_tag=classify_source(candidate.source_tag))
        try:
            new_id = store.add_transaction(record)
        except Exception as e:
            logger.error("persist_failed", index=index, inserted=len(report.inserted_ids))
            raise PersistenceError(candidates, report.inserted_ids, index, e) from e
        report.inserted_ids.append(new_id)
        known.add(key)

    logger.info(
        "candidates_persisted",
        inserted=len(report.inserted_ids),
        skipped_existing=report.skipped_existing,
    )
    return report
