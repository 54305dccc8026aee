"""Tabular extraction: workbook bytes in, one ``RawSheet`` out.

Statement exports bury the transaction table under title blocks, account
summaries and card descriptions, and end it with subtotals and a grand
total. This module finds the sheet, the header row (possibly spread over
several rows) and the data region between them.
"""

import csv
import io
import math
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Dict, List, Optional, Tuple

import msoffcrypto
import numpy as np
import pandas as pd
import structlog

from .config import PipelineSettings, get_pipeline_settings
from .errors import ExtractionError
from .issuers import AccountHeaderScan, FixedOffset, Grid, IssuerProfile, guess_issuer, profile_for_marker
from .models import Cell, ColumnRole, RawSheet, Row
from .normalizer import looks_like_amount, looks_like_date
from .vocabulary import (
    ACCOUNT_NUMBER_PATTERN,
    CARD_DESCRIPTION_PATTERNS,
    GRAND_TOTAL_PATTERN,
    MONEY_HEADER_PATTERN,
    ROLE_PATTERNS,
    SUBTOTAL_PATTERN,
    normalize_label,
)

logger = structlog.get_logger(__name__)

_ZIP_MAGIC = b"PK\x03\x04"
# OLE2 Compound Document magic bytes: legacy .xls and encrypted OOXML files
_OLE2_MAGIC = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"

CSV_ENCODINGS = ["utf-8-sig", "cp949", "euc-kr", "latin-1"]
MAX_CSV_COLUMNS = 256

# Header labels longer than this are treated as titles, not column names.
MAX_HEADER_LABEL = 30
MAX_CONTINUATION_LABEL = 20


def _is_ole2(file_content: bytes) -> bool:
    return file_content[:8] == _OLE2_MAGIC


def detect_file_type(file_content: bytes, filename: Optional[str] = None) -> str:
    """Return ``.xlsx``, ``.xls`` or ``.csv``; the file extension wins over sniffing."""
    if filename:
        lowered = filename.lower()
        for ext in (".xlsx", ".xls", ".csv"):
            if lowered.endswith(ext):
                return ext
    if file_content.startswith(_ZIP_MAGIC):
        return ".xlsx"
    if _is_ole2(file_content):
        return ".xls"
    return ".csv"


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _decrypt(file_content: bytes, password: str) -> bytes:
    decrypted_workbook = io.BytesIO()
    try:
        with io.BytesIO(file_content) as f:
            office_file = msoffcrypto.OfficeFile(f)
            office_file.load_key(password=password)
            office_file.decrypt(decrypted_workbook)
    except Exception as e:
        msg = str(e).lower()
        if "password" in msg or "decrypt" in msg or "key" in msg:
            raise ExtractionError("Invalid password") from e
        raise ExtractionError(f"Failed to decrypt file: {e}") from e
    return decrypted_workbook.getvalue()


def _is_encrypted(file_content: bytes) -> bool:
    try:
        with io.BytesIO(file_content) as f:
            return bool(msoffcrypto.OfficeFile(f).is_encrypted())
    except Exception as e:
        logger.debug("encryption_probe_failed", error=str(e))
        return False


def normalize_cell(value) -> Cell:
    """Convert a loaded cell to str/int/float/None.

    Dates become ``YYYY-MM-DD`` (with `` HH:MM:SS`` when a time is set),
    times become ``HH:MM:SS``, integral floats become ints.
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, (bool, np.bool_)):
        return str(bool(value))
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        if math.isnan(value):
            return None
        return int(value) if float(value).is_integer() else float(value)
    text = str(value).strip()
    return text or None


def _frame_to_grid(df: pd.DataFrame) -> Grid:
    return [[normalize_cell(v) for v in row] for row in df.itertuples(index=False, name=None)]


def _read_excel(data: bytes, engine: str) -> Dict[str, Grid]:
    try:
        frames = pd.read_excel(
            io.BytesIO(data), sheet_name=None, header=None, dtype=object, engine=engine
        )
    except Exception as e:
        raise ExtractionError(f"Could not read workbook: {e}") from e
    return {str(name): _frame_to_grid(df) for name, df in frames.items()}


CSV_DELIMITERS = ",;\t|"


def _sniff_delimiter(sample: str) -> str:
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        # Title rows without delimiters defeat the sniffer's consistency check.
        counts = {d: sample.count(d) for d in CSV_DELIMITERS}
        best = max(counts, key=counts.get)
        return best if counts[best] else ","


def _read_csv(file_content: bytes) -> Dict[str, Grid]:
    df = None
    for encoding in CSV_ENCODINGS:
        sample = file_content[:4096].decode(encoding, errors="ignore")
        try:
            # Title rows are narrower than the table; names pads every row.
            df = pd.read_csv(
                io.BytesIO(file_content),
                encoding=encoding,
                sep=_sniff_delimiter(sample),
                header=None,
                names=range(MAX_CSV_COLUMNS),
                dtype=object,
                keep_default_na=False,
                skip_blank_lines=False,
            )
            break
        except UnicodeDecodeError:
            continue
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ExtractionError(f"Could not read CSV file: {e}") from e
    if df is None:
        raise ExtractionError("Could not decode CSV file with any known encoding")

    df = df.dropna(axis=1, how="all")
    return {"csv": _frame_to_grid(df)}


def read_workbook(
    file_content: bytes, filename: Optional[str] = None, password: Optional[str] = None
) -> Dict[str, Grid]:
    """Load every sheet of a workbook (or a CSV file) as a grid of cells."""
    if not file_content:
        raise ExtractionError("Empty file", filename)

    file_type = detect_file_type(file_content, filename)
    if file_type == ".csv" and not (file_content.startswith(_ZIP_MAGIC) or _is_ole2(file_content)):
        return _read_csv(file_content)

    data = file_content
    if _is_ole2(data):
        if password:
            data = _decrypt(data, password)
        elif _is_encrypted(data):
            raise ExtractionError("Password required", filename)

    engine = "openpyxl" if data.startswith(_ZIP_MAGIC) else "xlrd"
    return _read_excel(data, engine)


# ---------------------------------------------------------------------------
# Locating the table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SectionMarker:
    row: int
    text: str
    profile: IssuerProfile


def _labels(row: List[Cell]) -> List[str]:
    return [
        normalize_label(c)
        for c in row
        if isinstance(c, str) and len(c.strip()) <= MAX_HEADER_LABEL
    ]


def _has_role(labels: List[str], role: ColumnRole) -> bool:
    pattern = ROLE_PATTERNS[role]
    return any(pattern.search(label) and not looks_like_date(label) for label in labels)


def find_section_marker(grid: Grid, depth: int = 50) -> Optional[SectionMarker]:
    for idx, row in enumerate(grid[:depth]):
        for cell in row:
            if not isinstance(cell, str):
                continue
            profile = profile_for_marker(cell)
            if profile is not None:
                return SectionMarker(row=idx, text=cell, profile=profile)
    return None


def select_sheet(
    sheets: Dict[str, Grid], depth: int = 50
) -> Tuple[str, Grid, Optional[SectionMarker]]:
    """First sheet with a section marker, else the first sheet holding data."""
    for name, grid in sheets.items():
        marker = find_section_marker(grid, depth)
        if marker is not None:
            return name, grid, marker
    for name, grid in sheets.items():
        if any(any(c is not None for c in row) for row in grid):
            return name, grid, None
    raise ExtractionError("Workbook contains no data")


def _is_vocabulary_header(row: List[Cell]) -> bool:
    labels = _labels(row)
    if not _has_role(labels, ColumnRole.DATE):
        return False
    has_money = any(MONEY_HEADER_PATTERN.search(label) for label in labels)
    return has_money or _has_role(labels, ColumnRole.MERCHANT)


def _scan_account_header(
    grid: Grid, marker_row: int, rule: AccountHeaderScan, window: int = 15
) -> int:
    seen_account = False
    end = min(len(grid), marker_row + window + 1)
    for idx in range(marker_row, end):
        labels = _labels(grid[idx])
        if any(ACCOUNT_NUMBER_PATTERN.search(label) for label in labels):
            seen_account = True
        if idx == marker_row or not seen_account:
            continue
        if (
            _has_role(labels, ColumnRole.DATE)
            and _has_role(labels, ColumnRole.WITHDRAWAL)
            and _has_role(labels, ColumnRole.DEPOSIT)
        ):
            return idx
    return marker_row + rule.fallback_offset


def _first_non_empty_row(grid: Grid) -> int:
    for idx, row in enumerate(grid):
        if any(c is not None for c in row):
            return idx
    return 0


def find_header_row(
    grid: Grid, marker: Optional[SectionMarker], settings: PipelineSettings
) -> Tuple[int, bool]:
    """Return ``(header_row, synthetic)``.

    When ``synthetic`` is true the sheet has no header and ``header_row`` is
    the first data row.
    """
    if marker is not None:
        rule = marker.profile.header_rule
        if isinstance(rule, FixedOffset):
            idx = marker.row + rule.offset
        else:
            idx = _scan_account_header(grid, marker.row, rule, settings.ACCOUNT_SCAN_WINDOW)
        if idx < len(grid):
            return idx, False
        logger.warning("marker_header_out_of_range", marker=marker.text, row=idx)

    for idx, row in enumerate(grid[: settings.HEADER_SCAN_DEPTH]):
        if _is_vocabulary_header(row):
            return idx, False

    first = _first_non_empty_row(grid)
    if any(looks_like_date(c) or looks_like_amount(c) for c in grid[first]):
        return first, True
    return first, False


def _is_header_continuation(row: List[Cell]) -> bool:
    values = [c for c in row if c is not None]
    if not values or not all(isinstance(c, str) for c in values):
        return False
    if any(len(c) > MAX_CONTINUATION_LABEL or looks_like_date(c) for c in values):
        return False
    numeric = sum(1 for c in values if looks_like_amount(c))
    if numeric / len(values) >= 0.3:
        return False
    first = normalize_label(values[0])
    if GRAND_TOTAL_PATTERN.search(first) or SUBTOTAL_PATTERN.search(first):
        return False
    return not _is_card_description(values)


def merge_header_rows(grid: Grid, header_row: int, depth: int = 5) -> Tuple[List[str], int]:
    """Combine a header with continuation rows below it.

    Returns the labels and the index of the first data row.
    """
    labels = ["" if c is None else str(c).strip() for c in grid[header_row]]
    consumed = 0
    for offset in range(1, depth + 1):
        idx = header_row + offset
        if idx >= len(grid) or not _is_header_continuation(grid[idx]):
            break
        for col, cell in enumerate(grid[idx]):
            if cell is None or col >= len(labels):
                continue
            text = str(cell).strip()
            current = labels[col]
            if not current:
                labels[col] = text
            elif text != current and text not in current:
                labels[col] = current + text
        consumed = offset
    if consumed:
        logger.debug("header_rows_merged", header_row=header_row, merged=consumed)
    return labels, header_row + 1 + consumed


def finalize_headers(labels: List[str]) -> List[str]:
    """Fill blank labels positionally and suffix duplicates (``금액_2``)."""
    seen: Dict[str, int] = {}
    headers = []
    for idx, label in enumerate(labels):
        name = label or f"column_{idx + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def _is_card_description(values: List[Cell]) -> bool:
    if len(values) != 1 or not isinstance(values[0], str):
        return False
    return any(p.search(values[0]) for p in CARD_DESCRIPTION_PATTERNS)


def collect_rows(grid: Grid, start: int, headers: List[str], labels: List[str]) -> List[Row]:
    """Data rows from ``start`` up to a grand-total row or the end of the sheet."""
    rows: List[Row] = []
    dropped = {"empty": 0, "subtotal": 0, "card_description": 0, "repeated_header": 0}
    for idx in range(start, len(grid)):
        cells = grid[idx]
        values = [c for c in cells if c is not None]
        if not values:
            dropped["empty"] += 1
            continue
        if isinstance(values[0], str):
            first = normalize_label(values[0])
            if GRAND_TOTAL_PATTERN.search(first):
                logger.info("grand_total_reached", row=idx)
                break
            if SUBTOTAL_PATTERN.search(first):
                dropped["subtotal"] += 1
                continue
        if _is_card_description(values):
            dropped["card_description"] += 1
            continue
        if [("" if c is None else str(c).strip()) for c in cells[: len(labels)]] == labels:
            dropped["repeated_header"] += 1
            continue
        rows.append({h: (cells[i] if i < len(cells) else None) for i, h in enumerate(headers)})
    logger.debug("data_rows_filtered", kept=len(rows), **dropped)
    return rows


def parse_statement_file(
    file_content: bytes,
    filename: Optional[str] = None,
    password: Optional[str] = None,
    settings: Optional[PipelineSettings] = None,
) -> RawSheet:
    """
    Locate the transaction table of a statement export.

    Raises ExtractionError when the file cannot be read or holds no rows.
    """
    settings = settings or get_pipeline_settings()
    sheets = read_workbook(file_content, filename, password)
    sheet_name, grid, marker = select_sheet(sheets, settings.HEADER_SCAN_DEPTH)
    logger.info(
        "sheet_selected",
        sheet=sheet_name,
        marker=marker.text if marker else None,
        profile=marker.profile.name if marker else None,
    )

    header_row, synthetic = find_header_row(grid, marker, settings)
    if synthetic:
        width = max(len(row) for row in grid)
        labels = [f"column_{i + 1}" for i in range(width)]
        headers = labels
        data_start = header_row
    else:
        labels, data_start = merge_header_rows(grid, header_row, settings.HEADER_MERGE_DEPTH)
        headers = finalize_headers(labels)
    logger.info("header_row_found", row=header_row, synthetic=synthetic, headers=headers)

    rows = collect_rows(grid, data_start, headers, labels)
    if not rows:
        raise ExtractionError(f"No transaction rows found in sheet '{sheet_name}'", filename)

    issuer = guess_issuer(filename, grid)
    if issuer is None and marker is not None and marker.profile.issuer_names:
        issuer = marker.profile.issuer_names[0]

    return RawSheet(
        headers=headers,
        rows=rows,
        sheet_name=sheet_name,
        header_row=header_row,
        synthetic_headers=synthetic,
        issuer=issuer,
    )
