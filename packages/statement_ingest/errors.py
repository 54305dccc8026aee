"""Exceptions raised by the statement import pipeline.

Only structural failures are raised. Per-row problems are counted in the
import result instead, so a statement with decorative or summary rows still
imports everything that can be read.
"""

from typing import List, Optional, Sequence

from .models import TransactionCandidate


class StatementImportError(Exception):
    """Base error for the import pipeline."""


class ExtractionError(StatementImportError):
    """The file holds no usable transaction table."""

    def __init__(self, detail: str, filename: Optional[str] = None):
        self.detail = detail
        self.filename = filename
        message = f"{filename}: {detail}" if filename else detail
        super().__init__(message)


class PersistenceError(StatementImportError):
    """Storage rejected a candidate.

    Keeps the whole candidate list so the caller can retry the write
    without parsing the source file again.
    """

    def __init__(
        self,
        candidates: Sequence[TransactionCandidate],
        inserted_ids: List[int],
        failed_index: int,
        cause: Exception,
    ):
        self.candidates = list(candidates)
        self.inserted_ids = list(inserted_ids)
        self.failed_index = failed_index
        self.cause = cause
        super().__init__(
            f"storage failed on candidate {failed_index} "
            f"after {len(inserted_ids)} inserts: {cause}"
        )
