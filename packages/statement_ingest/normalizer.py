"""Value normalization: one raw row plus a role mapping becomes a candidate.

Rows that cannot yield a dated, nonzero transaction are dropped with a
``NormalizationSkip`` reason instead of raising.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import List, Optional, Union

import numpy as np
import structlog

from .issuers import is_card_issuer
from .models import (
    Cell,
    ColumnRole,
    ColumnRoleMapping,
    Direction,
    Row,
    TransactionCandidate,
)
from .vocabulary import CARD_AMOUNT_PATTERN, DEPOSIT_HINT_PATTERN, WITHDRAWAL_HINT_PATTERN

logger = structlog.get_logger(__name__)

EXCEL_EPOCH = date(1899, 12, 30)
# Serial day numbers for roughly 1982-2091.
EXCEL_SERIAL_MIN = 30000
EXCEL_SERIAL_MAX = 70000


class NormalizationSkip(str, Enum):
    """Why a row produced no candidate."""

    MISSING_DATE = "missing_date"
    ZERO_AMOUNT = "zero_amount"


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[ T].*)?$")
_COMPACT_8 = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_COMPACT_6 = re.compile(r"^(\d{2})(\d{2})(\d{2})$")
_YEAR_FIRST = re.compile(r"^(\d{4})\s*[./]\s*(\d{1,2})\s*[./]\s*(\d{1,2})\.?(?:\s.*)?$")
_SHORT_YEAR_DOTTED = re.compile(r"^(\d{2})\.(\d{2})\.(\d{2})\.?(?:\s.*)?$")
_YEAR_LAST = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{4}|\d{2})(?:[\s,].*)?$")
_SERIAL = re.compile(r"^\d{5}(?:\.\d+)?$")
_LONG_FORM = re.compile(r"(\d{2,4})\s*[년年]\s*(\d{1,2})\s*[월月]\s*(\d{1,2})\s*[일日]?")
_LONG_FORM_NO_YEAR = re.compile(r"^(\d{1,2})\s*[월月]\s*(\d{1,2})\s*[일日]")
_MONTH_DAY = re.compile(r"^(\d{1,2})[/-](\d{1,2})(?:\s.*)?$")
_MONTH_NAME = re.compile(r"[A-Za-z]{3}")

# strptime formats for month-name dates, tried after the numeric forms.
MONTH_NAME_FORMATS = [
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%d-%b-%y",
    "%b %d %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %y",
]
MONTH_NAME_NO_YEAR_FORMATS = ["%d %b", "%b %d", "%d-%b", "%d %B", "%B %d"]


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 1900 + year if year >= 50 else 2000 + year


def _build_date(year: int, month: int, day: int) -> Optional[str]:
    year = _expand_year(year)
    if not 1900 <= year <= 2100:
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _day_month(first: int, second: int):
    """Order two numeric fields as (month, day); US form unless impossible."""
    if first > 12 and second <= 12:
        return second, first
    return first, second


def excel_serial_to_date(serial: float) -> Optional[str]:
    if not EXCEL_SERIAL_MIN <= serial <= EXCEL_SERIAL_MAX:
        return None
    return (EXCEL_EPOCH + timedelta(days=int(serial))).isoformat()


def _parse_month_name(text: str, today: date) -> Optional[str]:
    head = re.split(r"\s*,?\s*\d{1,2}:\d{2}", text)[0].strip().rstrip(",")
    head = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", head)
    for fmt in MONTH_NAME_FORMATS:
        try:
            return datetime.strptime(head, fmt).date().isoformat()
        except ValueError:
            continue
    for fmt in MONTH_NAME_NO_YEAR_FORMATS:
        try:
            parsed = datetime.strptime(head, fmt)
        except ValueError:
            continue
        return _build_date(today.year, parsed.month, parsed.day)
    return None


def normalize_date(value: Cell, today: Optional[date] = None) -> Optional[str]:
    """Convert a cell to ``YYYY-MM-DD`` or return None.

    Accepts ISO, compact ``YYYYMMDD``/``YYMMDD``, separated forms with 2- or
    4-digit years, Excel serial numbers, ``2024년 3월 5일`` style long forms,
    month-name forms and bare month/day (current year).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        if isinstance(value, (float, np.floating)) and math.isnan(value):
            return None
        if float(value).is_integer():
            digits = str(int(value))
            m = _COMPACT_8.match(digits) or _COMPACT_6.match(digits)
            if m:
                return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return excel_serial_to_date(float(value))

    text = str(value).strip()
    if not text:
        return None
    today = today or date.today()

    m = _ISO.match(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _COMPACT_8.match(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _COMPACT_6.match(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _YEAR_FIRST.match(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _SHORT_YEAR_DOTTED.match(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _YEAR_LAST.match(text)
    if m:
        month, day = _day_month(int(m.group(1)), int(m.group(2)))
        return _build_date(int(m.group(3)), month, day)
    if _SERIAL.match(text):
        return excel_serial_to_date(float(text))
    m = _LONG_FORM.search(text)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _LONG_FORM_NO_YEAR.match(text)
    if m:
        return _build_date(today.year, int(m.group(1)), int(m.group(2)))
    if _MONTH_NAME.search(text):
        parsed = _parse_month_name(text, today)
        if parsed:
            return parsed
    m = _MONTH_DAY.match(text)
    if m:
        month, day = _day_month(int(m.group(1)), int(m.group(2)))
        return _build_date(today.year, month, day)
    return None


def looks_like_date(value: Cell) -> bool:
    """True for text cells that parse as a date."""
    return isinstance(value, str) and normalize_date(value) is not None


# ---------------------------------------------------------------------------
# Times
# ---------------------------------------------------------------------------

_CLOCK = re.compile(
    r"(오전|오후|AM|PM|am|pm)?\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM|am|pm|a\.m\.|p\.m\.)?"
)
_COMPACT_TIME = re.compile(r"^(\d{2})(\d{2})(\d{2})?$")


def _clock(hour: int, minute: int, second: int = 0) -> Optional[str]:
    if hour > 23 or minute > 59 or second > 59:
        return None
    return f"{hour:02d}:{minute:02d}:{second:02d}"


def _from_day_fraction(fraction: float) -> Optional[str]:
    seconds = int(round(fraction * 86400)) % 86400
    return _clock(seconds // 3600, (seconds % 3600) // 60, seconds % 60)


def normalize_time(value: Cell) -> Optional[str]:
    """Convert a cell to ``HH:MM:SS`` or return None.

    Handles ``14:30``, 12-hour clocks (``PM 2:30``, ``오후 2:30``), compact
    ``143005`` and Excel day fractions.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.strftime("%H:%M:%S")
    if isinstance(value, time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, (float, np.floating)):
        if math.isnan(value):
            return None
        if 0 <= value < 1:
            return _from_day_fraction(float(value))
        if not float(value).is_integer():
            return None
        value = int(value)
    if isinstance(value, (int, np.integer)):
        value = f"{int(value):06d}" if value >= 10000 else f"{int(value):04d}"

    text = str(value).strip()
    m = _CLOCK.search(text)
    if m:
        hour, minute = int(m.group(2)), int(m.group(3))
        second = int(m.group(4) or 0)
        marker = (m.group(1) or m.group(5) or "").lower().replace(".", "")
        if marker in ("오후", "pm") and hour < 12:
            hour += 12
        elif marker in ("오전", "am") and hour == 12:
            hour = 0
        return _clock(hour, minute, second)
    m = _COMPACT_TIME.match(text)
    if m:
        return _clock(int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))
    return None


def _embedded_time(value: Cell) -> Optional[str]:
    """Time carried by a date cell, e.g. ``2024-03-05 14:30`` or serial 45356.5."""
    if isinstance(value, datetime):
        return value.strftime("%H:%M:%S") if value.time() != time(0, 0) else None
    if isinstance(value, (float, np.floating)) and not math.isnan(value):
        fraction = float(value) - int(value)
        return _from_day_fraction(fraction) if fraction else None
    if isinstance(value, str) and ":" in value:
        return normalize_time(value)
    return None


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

_CURRENCY = re.compile(r"[₩$€£¥￥₹]|원|円|元|\b(?:KRW|USD|EUR|JPY|CNY|GBP|won)\b", re.IGNORECASE)
_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)$")
_DASHES = {"-", "–", "—", "--"}


def _clean_amount_text(value) -> Optional[str]:
    text = str(value).strip().strip("\"'")
    if not text or text in _DASHES:
        return None
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = _CURRENCY.sub("", text)
    text = re.sub(r"[,\s]", "", text)
    if text.endswith("-") and _NUMBER.match(text[:-1]):
        negative = not negative
        text = text[:-1]
    if not _NUMBER.match(text):
        return None
    if negative:
        text = text[1:] if text.startswith("-") else "-" + text.lstrip("+")
    return text


def normalize_amount(value: Cell) -> float:
    """Parse a money cell; blank, dash and unparseable cells are 0.

    ``(1,234)`` is negative, so ``normalize_amount("1,234") ==
    -normalize_amount("(1,234)")``.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, np.integer, np.floating)):
        number = float(value)
        return 0.0 if math.isnan(number) else number
    text = _clean_amount_text(value)
    if text is None:
        return 0.0
    return float(text)


def looks_like_amount(value: Cell) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float, np.integer, np.floating)):
        return not math.isnan(float(value))
    return _clean_amount_text(value) is not None


# ---------------------------------------------------------------------------
# Direction
# ---------------------------------------------------------------------------


def resolve_direction(
    amount: float,
    type_hint: Optional[str] = None,
    column_direction: Optional[Direction] = None,
    card_amount: bool = False,
) -> Direction:
    """Income or expense, first applicable rule wins.

    1. type-hint text naming a withdrawal or deposit
    2. the direction implied by the source column (withdrawal/deposit)
    3. card single-amount column: positive is a purchase, negative a refund
    4. raw sign: negative is expense, positive is income
    5. expense
    """
    if type_hint:
        if WITHDRAWAL_HINT_PATTERN.search(type_hint):
            return Direction.EXPENSE
        if DEPOSIT_HINT_PATTERN.search(type_hint):
            return Direction.INCOME
    if column_direction is not None:
        return column_direction
    if card_amount:
        return Direction.EXPENSE if amount >= 0 else Direction.INCOME
    if amount < 0:
        return Direction.EXPENSE
    if amount > 0:
        return Direction.INCOME
    return Direction.EXPENSE


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


def _text(value: Cell) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


@dataclass
class _RowAccumulator:
    """Values collected from one row before the amount is resolved."""

    date: Optional[str] = None
    time: Optional[str] = None
    withdrawal: float = 0.0
    deposit: float = 0.0
    amount: float = 0.0
    amount_column: Optional[str] = None
    type_hint: Optional[str] = None
    merchant: Optional[str] = None
    memo: Optional[str] = None
    account: Optional[str] = None

    def resolve_amount(self, issuer: Optional[str]):
        """Return (signed amount, column direction, card heuristic flag)."""
        if self.withdrawal:
            return self.withdrawal, Direction.EXPENSE, False
        if self.deposit:
            return self.deposit, Direction.INCOME, False
        card = bool(
            self.amount_column and CARD_AMOUNT_PATTERN.search(self.amount_column.lower())
        ) or is_card_issuer(issuer)
        return self.amount, None, card


def _accumulate(row: Row, mapping: ColumnRoleMapping, today: Optional[date]) -> _RowAccumulator:
    acc = _RowAccumulator()
    for pair in mapping.pairs:
        value = row.get(pair.source)
        if value is None:
            continue
        role = pair.role
        if role == ColumnRole.DATE:
            acc.date = normalize_date(value, today=today)
            acc.time = acc.time or _embedded_time(value)
        elif role == ColumnRole.TIME:
            acc.time = normalize_time(value) or acc.time
        elif role == ColumnRole.WITHDRAWAL:
            acc.withdrawal = normalize_amount(value)
        elif role == ColumnRole.DEPOSIT:
            acc.deposit = normalize_amount(value)
        elif role == ColumnRole.AMOUNT:
            acc.amount = normalize_amount(value)
            acc.amount_column = pair.source
        elif role == ColumnRole.TYPE:
            acc.type_hint = _text(value)
        elif role == ColumnRole.MERCHANT:
            acc.merchant = _text(value)
        elif role == ColumnRole.MEMO:
            acc.memo = _text(value)
        elif role == ColumnRole.ACCOUNT:
            acc.account = _text(value)
    return acc


def normalize_row(
    row: Row,
    mapping: ColumnRoleMapping,
    issuer: Optional[str] = None,
    today: Optional[date] = None,
) -> Union[TransactionCandidate, NormalizationSkip]:
    """Build a candidate from one row, or return the reason it was dropped."""
    acc = _accumulate(row, mapping, today)
    if not acc.date:
        return NormalizationSkip.MISSING_DATE

    signed, column_direction, card = acc.resolve_amount(issuer)
    if not signed:
        return NormalizationSkip.ZERO_AMOUNT

    direction = resolve_direction(
        signed,
        type_hint=acc.type_hint,
        column_direction=column_direction,
        card_amount=card,
    )
    return TransactionCandidate(
        date=acc.date,
        time=acc.time,
        amount=abs(signed),
        direction=direction,
        merchant=acc.merchant,
        memo=acc.memo,
        source_tag=issuer or acc.account,
        original_row=dict(row),
    )


@dataclass
class NormalizationReport:
    candidates: List[TransactionCandidate] = field(default_factory=list)
    skipped: Counter = field(default_factory=Counter)

    @property
    def rows_rejected(self) -> int:
        return sum(self.skipped.values())


def apply_mapping(
    rows: List[Row],
    mapping: ColumnRoleMapping,
    issuer: Optional[str] = None,
    today: Optional[date] = None,
    tracker=None,
) -> NormalizationReport:
    """Normalize every row; ``tracker.update()`` is called once per row."""
    report = NormalizationReport()
    for index, row in enumerate(rows):
        result = normalize_row(row, mapping, issuer=issuer, today=today)
        if isinstance(result, NormalizationSkip):
            report.skipped[result.value] += 1
            logger.debug("row_skipped", row=index, reason=result.value)
        else:
            report.candidates.append(result)
        if tracker is not None:
            tracker.update()

    logger.info(
        "rows_normalized",
        rows=len(rows),
        candidates=len(report.candidates),
        skipped=dict(report.skipped),
    )
    return report
