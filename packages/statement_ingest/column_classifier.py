"""Column role inference.

Headers are matched against the keyword tables first. When that leaves the
date or money roles unresolved (or the sheet had no header row at all), a
sample of the data is profiled column by column and the roles are chosen
from how the values look.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

import structlog

from .config import PipelineSettings, get_pipeline_settings
from .models import ClassificationGap, ColumnMapping, ColumnRole, ColumnRoleMapping, RawSheet, Row
from .normalizer import (
    EXCEL_SERIAL_MAX,
    EXCEL_SERIAL_MIN,
    looks_like_amount,
    normalize_amount,
    normalize_date,
)
from .vocabulary import MONEY_ROLES, match_role, normalize_label

logger = structlog.get_logger(__name__)

# Hangul, CJK ideographs, kana: merchant names in the supported locales.
_EAST_ASIAN = re.compile(r"[가-힣぀-ヿ一-鿿]")

# A column of bare serial numbers only counts as dates when they cluster.
MAX_SERIAL_SPAN_DAYS = 400
MIN_EXCLUSIVE_ROWS = 5

_DIGITS = re.compile(r"^\d+(?:\.\d+)?$")


def classify_by_name(headers: List[str]) -> List[ColumnMapping]:
    """One column per role; the leftmost matching header wins."""
    pairs: List[ColumnMapping] = []
    taken = set()
    for header in headers:
        role = match_role(normalize_label(header))
        if role is None or role in taken:
            continue
        taken.add(role)
        pairs.append(ColumnMapping(source=header, role=role))
    return pairs


@dataclass
class ColumnProfile:
    """Value statistics for one column over the sampled rows."""

    name: str
    filled: int = 0
    date_hits: int = 0
    serial_days: List[int] = field(default_factory=list)
    bare_date_hits: int = 0
    amount_hits: int = 0
    text_hits: int = 0
    text_length: int = 0
    script_hits: int = 0
    amounts: List[float] = field(default_factory=list)

    def _ratio(self, hits: int) -> float:
        return hits / self.filled if self.filled else 0.0

    @property
    def serial_only(self) -> bool:
        return self.date_hits > 0 and len(self.serial_days) == self.date_hits

    @property
    def date_ratio(self) -> float:
        if self.serial_only and max(self.serial_days) - min(self.serial_days) > MAX_SERIAL_SPAN_DAYS:
            return 0.0
        return self._ratio(self.date_hits)

    @property
    def text_date_ratio(self) -> float:
        return self._ratio(self.date_hits - self.bare_date_hits)

    @property
    def amount_ratio(self) -> float:
        return self._ratio(self.amount_hits)

    @property
    def text_ratio(self) -> float:
        return self._ratio(self.text_hits)

    @property
    def average_length(self) -> float:
        return self.text_length / self.text_hits if self.text_hits else 0.0

    @property
    def has_script(self) -> bool:
        return self.script_hits > 0


def _bare_number(value) -> Optional[float]:
    """Value of a number cell or a digits-only string, else None.

    Such cells parse both as a date (serial or compact) and as an amount.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _DIGITS.match(value.strip()):
        return float(value)
    return None


def _is_free_text(value) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    return len(text) >= 2 and any(ch.isalpha() for ch in text)


def profile_columns(
    rows: List[Row], columns: List[str], sample_size: int = 30, today: Optional[date] = None
) -> Dict[str, ColumnProfile]:
    sample = rows[:sample_size]
    profiles = {name: ColumnProfile(name=name) for name in columns}
    for row in sample:
        for name, profile in profiles.items():
            value = row.get(name)
            if value is None:
                profile.amounts.append(0.0)
                continue
            profile.filled += 1

            parsed = normalize_date(value, today=today)
            bare = _bare_number(value)
            if parsed is not None:
                profile.date_hits += 1
                if bare is not None:
                    profile.bare_date_hits += 1
                    if EXCEL_SERIAL_MIN <= bare <= EXCEL_SERIAL_MAX:
                        profile.serial_days.append(int(bare))

            if (parsed is None or bare is not None) and looks_like_amount(value):
                profile.amount_hits += 1
                profile.amounts.append(normalize_amount(value))
            else:
                profile.amounts.append(0.0)

            if parsed is None and not looks_like_amount(value) and _is_free_text(value):
                text = value.strip()
                profile.text_hits += 1
                profile.text_length += len(text)
                if _EAST_ASIAN.search(text):
                    profile.script_hits += 1
    return profiles


def _exclusive_pair(left: ColumnProfile, right: ColumnProfile) -> bool:
    """True when the two columns are nonzero on different rows."""
    only_left = only_right = both = 0
    for a, b in zip(left.amounts, right.amounts):
        if a and b:
            both += 1
        elif a:
            only_left += 1
        elif b:
            only_right += 1
    exclusive = only_left + only_right
    return (
        only_left > 0
        and only_right > 0
        and exclusive >= MIN_EXCLUSIVE_ROWS
        and exclusive > 2 * both
    )


def classify_by_content(
    sheet: RawSheet,
    pairs: List[ColumnMapping],
    settings: PipelineSettings,
    today: Optional[date] = None,
) -> List[ColumnMapping]:
    """Fill unresolved roles from value statistics; returns the new pairs."""
    threshold = settings.CONTENT_RATIO_THRESHOLD
    mapped_roles = {pair.role for pair in pairs}
    free = [h for h in sheet.headers if h not in {pair.source for pair in pairs}]
    profiles = profile_columns(sheet.rows, free, settings.CONTENT_SAMPLE_SIZE, today)
    added: List[ColumnMapping] = []

    if ColumnRole.DATE not in mapped_roles:
        dated = [p for p in profiles.values() if p.date_ratio >= threshold]
        if dated:
            best = max(dated, key=lambda p: (p.text_date_ratio, p.date_ratio))
            added.append(ColumnMapping(best.name, ColumnRole.DATE))
            profiles.pop(best.name)

    if not mapped_roles & set(MONEY_ROLES):
        money = [p for p in profiles.values() if p.amount_ratio >= threshold]
        chosen = None
        for i, left in enumerate(money):
            for right in money[i + 1:]:
                if _exclusive_pair(left, right):
                    chosen = (left, right)
                    break
            if chosen:
                break
        if chosen:
            added.append(ColumnMapping(chosen[0].name, ColumnRole.WITHDRAWAL))
            added.append(ColumnMapping(chosen[1].name, ColumnRole.DEPOSIT))
            profiles.pop(chosen[0].name)
            profiles.pop(chosen[1].name)
        elif money:
            best = max(money, key=lambda p: p.amount_ratio)
            added.append(ColumnMapping(best.name, ColumnRole.AMOUNT))
            profiles.pop(best.name)

    text_roles = [r for r in (ColumnRole.MERCHANT, ColumnRole.MEMO) if r not in mapped_roles]
    texts = sorted(
        (p for p in profiles.values() if p.text_ratio >= threshold),
        key=lambda p: (p.has_script, p.average_length, p.text_ratio),
        reverse=True,
    )
    for role, profile in zip(text_roles, texts):
        added.append(ColumnMapping(profile.name, role))

    return added


def _gap(pairs: List[ColumnMapping]) -> Optional[ClassificationGap]:
    roles = {pair.role for pair in pairs}
    missing = []
    if ColumnRole.DATE not in roles:
        missing.append(ColumnRole.DATE)
    if not roles & set(MONEY_ROLES):
        missing.append(ColumnRole.AMOUNT)
    return ClassificationGap(missing) if missing else None


def classify_columns(
    sheet: RawSheet,
    settings: Optional[PipelineSettings] = None,
    today: Optional[date] = None,
) -> ColumnRoleMapping:
    """Assign a role to each column of ``sheet``; unmapped columns are ignored."""
    settings = settings or get_pipeline_settings()
    pairs = [] if sheet.synthetic_headers else classify_by_name(sheet.headers)

    if sheet.synthetic_headers or _gap(pairs) is not None:
        added = classify_by_content(sheet, pairs, settings, today=today)
        if added:
            logger.info(
                "content_roles_inferred",
                roles={pair.source: pair.role.value for pair in added},
            )
        pairs = pairs + added

    mapping = ColumnRoleMapping(pairs=pairs, gap=_gap(pairs))
    if mapping.gap is not None:
        logger.warning("classification_gap", missing=str(mapping.gap), headers=sheet.headers)
    logger.info("column_roles_resolved", mapping=mapping.as_dict())
    return mapping
