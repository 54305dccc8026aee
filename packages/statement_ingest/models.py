"""Data structures shared by every stage of the statement import pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

Cell = Union[str, int, float, None]
Row = Dict[str, Cell]


class ColumnRole(str, Enum):
    """Semantic meaning of a spreadsheet column."""

    DATE = "date"
    TIME = "time"
    AMOUNT = "amount"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    MERCHANT = "merchant"
    MEMO = "memo"
    ACCOUNT = "account"
    TYPE = "type"
    IGNORE = "ignore"


class Direction(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


@dataclass(frozen=True)
class RawSheet:
    """Rows of the transaction table located inside a workbook.

    ``rows`` map header label to cell value. ``synthetic_headers`` is set when
    the sheet had no header row and positional names were generated.
    """

    headers: List[str]
    rows: List[Row]
    sheet_name: str = ""
    header_row: int = 0
    synthetic_headers: bool = False
    issuer: Optional[str] = None


@dataclass(frozen=True)
class ColumnMapping:
    source: str
    role: ColumnRole


@dataclass(frozen=True)
class ClassificationGap:
    """Roles that stayed unresolved after both classification passes."""

    missing_roles: List[ColumnRole]

    def __str__(self) -> str:
        return ", ".join(role.value for role in self.missing_roles)


@dataclass
class ColumnRoleMapping:
    """Pairs of source column and role. Unmapped columns are ignored."""

    pairs: List[ColumnMapping] = field(default_factory=list)
    gap: Optional[ClassificationGap] = None

    def column_for(self, role: ColumnRole) -> Optional[str]:
        for pair in self.pairs:
            if pair.role == role:
                return pair.source
        return None

    def has(self, role: ColumnRole) -> bool:
        return self.column_for(role) is not None

    @property
    def has_amount(self) -> bool:
        return any(
            self.has(role)
            for role in (ColumnRole.AMOUNT, ColumnRole.WITHDRAWAL, ColumnRole.DEPOSIT)
        )

    def as_dict(self) -> Dict[str, str]:
        return {pair.source: pair.role.value for pair in self.pairs}


@dataclass
class TransactionCandidate:
    """A normalized transaction awaiting persistence.

    ``amount`` is always positive; the sign lives in ``direction``.
    """

    date: str
    amount: float
    direction: Direction
    time: Optional[str] = None
    merchant: Optional[str] = None
    memo: Optional[str] = None
    source_tag: Optional[str] = None
    original_row: Row = field(default_factory=dict)
    category_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "time": self.time,
            "amount": self.amount,
            "direction": self.direction.value,
            "merchant": self.merchant,
            "memo": self.memo,
            "source_tag": self.source_tag,
            "category_id": self.category_id,
            "original_row": dict(self.original_row),
        }


# ---------------------------------------------------------------------------
# Reference data owned by the storage collaborator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    type: Direction = Direction.EXPENSE
    exclude_from_stats: bool = False


@dataclass(frozen=True)
class CategoryRule:
    """User rule: comma-separated patterns tested against one field."""

    id: int
    pattern: str
    category_id: int
    target_field: str = "merchant"  # "merchant" or "memo"
    priority: int = 0
    is_active: bool = True

    @property
    def tokens(self) -> List[str]:
        return [p.strip() for p in self.pattern.split(",") if p.strip()]


@dataclass(frozen=True)
class ExclusionPattern:
    id: int
    pattern: str
    kind: str = "merchant"  # merchant, memo, account or both
    is_active: bool = True


@dataclass(frozen=True)
class PersistedTransaction:
    """A transaction already held by storage, used for duplicate checks."""

    id: int
    date: str
    amount: float
    direction: Direction = Direction.EXPENSE
    time: Optional[str] = None
    merchant: Optional[str] = None
    memo: Optional[str] = None
    category_id: Optional[int] = None
    source_tag: Optional[str] = None


@dataclass(frozen=True)
class DateRange:
    start: Optional[str] = None
    end: Optional[str] = None

    def contains(self, iso_date: str) -> bool:
        if self.start and iso_date < self.start:
            return False
        if self.end and iso_date > self.end:
            return False
        return True
