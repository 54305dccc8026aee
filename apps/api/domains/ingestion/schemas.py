"""Pydantic schemas for the ingestion domain."""

from pydantic import BaseModel, Field
from typing import Any, Optional


class TransactionOut(BaseModel):
    """A normalized, categorized candidate shown for review before commit."""

    date: str
    time: Optional[str] = None
    amount: float
    direction: str  # "income" or "expense"
    merchant: Optional[str] = None
    memo: Optional[str] = None
    source_tag: Optional[str] = None
    category_id: Optional[int] = None
    fingerprint: str
    raw_data: dict[str, Any] = Field(default_factory=dict)


class PossibleDuplicate(BaseModel):
    """A stored record that probably is the same transaction as a candidate."""

    fingerprint: str
    existing_id: int
    score: float


class IngestResponse(BaseModel):
    """Preview returned by the statement upload endpoints."""

    transactions: list[TransactionOut]
    count: int
    issuer: Optional[str] = None
    sheet_name: Optional[str] = None
    column_roles: dict[str, str] = Field(default_factory=dict)
    total_rows_seen: int = 0
    duplicates_skipped: int = 0
    rows_rejected: int = 0
    rejection_reasons: dict[str, int] = Field(default_factory=dict)
    excluded_by_pattern: int = 0
    income_excluded: int = 0
    possible_duplicates: list[PossibleDuplicate] = Field(default_factory=list)
    failed_files: dict[str, str] = Field(default_factory=dict)


class TransactionIn(BaseModel):
    """A reviewed candidate sent back for persistence."""

    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}:\d{2}$")
    amount: float = Field(..., gt=0)
    direction: str = Field(..., pattern=r"^(income|expense)$")
    merchant: Optional[str] = None
    memo: Optional[str] = None
    source_tag: Optional[str] = None
    category_id: Optional[int] = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class CommitRequest(BaseModel):
    transactions: list[TransactionIn]
    skip_existing: Optional[bool] = None


class CommitResponse(BaseModel):
    inserted_ids: list[int]
    inserted: int
    skipped_existing: int
