"""Ingestion service: converts between pipeline results and API schemas.

Parsing, deduplication and categorization all live in
``packages.statement_ingest``; this module only shapes their output for
the preview/commit flow.
"""

from packages.statement_ingest.dedup import fingerprint
from packages.statement_ingest.models import Direction, TransactionCandidate
from packages.statement_ingest.pipeline import ImportResult

from apps.api.domains.ingestion.schemas import (
    IngestResponse,
    PossibleDuplicate,
    TransactionIn,
    TransactionOut,
)


def to_transaction_out(candidate: TransactionCandidate) -> TransactionOut:
    return TransactionOut(
        date=candidate.date,
        time=candidate.time,
        amount=candidate.amount,
        direction=candidate.direction.value,
        merchant=candidate.merchant,
        memo=candidate.memo,
        source_tag=candidate.source_tag,
        category_id=candidate.category_id,
        fingerprint=fingerprint(candidate),
        raw_data=dict(candidate.original_row),
    )


def to_candidate(payload: TransactionIn) -> TransactionCandidate:
    return TransactionCandidate(
        date=payload.date,
        time=payload.time,
        amount=payload.amount,
        direction=Direction(payload.direction),
        merchant=payload.merchant,
        memo=payload.memo,
        source_tag=payload.source_tag,
        category_id=payload.category_id,
        original_row=dict(payload.raw_data),
    )


def build_preview(result: ImportResult) -> IngestResponse:
    """Shape an ImportResult as the upload response.

    Possible duplicates are keyed by candidate fingerprint so the client
    can flag rows without relying on list positions.
    """
    transactions = [to_transaction_out(c) for c in result.candidates]
    return IngestResponse(
        transactions=transactions,
        count=len(transactions),
        issuer=result.issuer,
        sheet_name=result.sheet_name,
        column_roles=result.mapping.as_dict() if result.mapping else {},
        total_rows_seen=result.total_rows_seen,
        duplicates_skipped=result.duplicates_removed,
        rows_rejected=result.rows_rejected,
        rejection_reasons=result.rejection_reasons,
        excluded_by_pattern=result.excluded_by_pattern,
        income_excluded=result.income_excluded,
        possible_duplicates=[
            PossibleDuplicate(
                fingerprint=fingerprint(match.candidate),
                existing_id=match.existing.id,
                score=match.score,
            )
            for match in result.duplicate_matches
        ],
        failed_files=result.failed_files,
    )
