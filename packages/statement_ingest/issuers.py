"""Issuer profiles and issuer-name guessing.

An issuer profile is selected by the section-marker phrase found in a sheet
and says how to reach the header row from that marker. Only two header
rules exist: a fixed row offset, and a bounded scan used by bank exports
whose title block varies in height.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import structlog

from .models import Cell

logger = structlog.get_logger(__name__)

Grid = List[List[Cell]]


@dataclass(frozen=True)
class FixedOffset:
    """Header sits ``offset`` rows below the marker row."""

    offset: int


@dataclass(frozen=True)
class AccountHeaderScan:
    """Scan forward for a date/withdrawal/deposit header under an account label.

    The scan covers ``ACCOUNT_SCAN_WINDOW`` rows and falls back to
    ``fallback_offset`` when they hold no such row.
    """

    fallback_offset: int = 1


HeaderRule = Union[FixedOffset, AccountHeaderScan]


@dataclass(frozen=True)
class IssuerProfile:
    name: str
    markers: Tuple[str, ...]
    header_rule: HeaderRule
    # Export convention that prefixes merchants with a numeric block.
    merchant_prefix: Optional[re.Pattern] = None
    issuer_names: Tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in self.markers)

    def strip_merchant(self, merchant: str) -> str:
        if self.merchant_prefix is None:
            return merchant
        return self.merchant_prefix.sub("", merchant)


HANA_CARD = IssuerProfile(
    name="hana_card",
    markers=("이용상세내역",),
    header_rule=FixedOffset(3),
    merchant_prefix=re.compile(r"^\d+_"),
    issuer_names=("하나카드",),
)
SHINHAN_CARD = IssuerProfile(
    name="shinhan_card",
    markers=("이용일자별", "카드사용내역"),
    header_rule=FixedOffset(1),
    issuer_names=("신한카드",),
)
BANK_HISTORY = IssuerProfile(
    name="bank_history",
    markers=("거래내역", "transaction history", "取引明細", "交易明细"),
    header_rule=AccountHeaderScan(fallback_offset=1),
)

# Order matters: "이용상세내역" must win over the generic bank marker.
PROFILES: Tuple[IssuerProfile, ...] = (HANA_CARD, SHINHAN_CARD, BANK_HISTORY)


def profile_for_marker(text: str) -> Optional[IssuerProfile]:
    for profile in PROFILES:
        if profile.matches(text):
            return profile
    return None


def profile_for_issuer(issuer: Optional[str]) -> Optional[IssuerProfile]:
    if not issuer:
        return None
    for profile in PROFILES:
        if any(name in issuer for name in profile.issuer_names):
            return profile
    return None


# ---------------------------------------------------------------------------
# Issuer-name guessing
# ---------------------------------------------------------------------------

# (display name, pattern). Cards are listed before banks.
CARD_ISSUERS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("하나카드", re.compile(r"하나.*카드")),
    ("신한카드", re.compile(r"신한.*카드")),
    ("현대카드", re.compile(r"현대.*카드")),
    ("삼성카드", re.compile(r"삼성.*카드")),
    ("KB국민카드", re.compile(r"(kb|국민).*카드", re.IGNORECASE)),
    ("롯데카드", re.compile(r"롯데.*카드")),
    ("우리카드", re.compile(r"우리.*카드")),
    ("NH농협카드", re.compile(r"(nh|농협).*카드", re.IGNORECASE)),
)
BANK_ISSUERS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("신한은행", re.compile(r"신한.*은행")),
    ("하나은행", re.compile(r"하나은행")),
    ("NH농협은행", re.compile(r"nh농협은행", re.IGNORECASE)),
    ("KB국민은행", re.compile(r"kb국민은행", re.IGNORECASE)),
    ("국민은행", re.compile(r"국민은행")),
    ("우리은행", re.compile(r"우리은행")),
    ("농협은행", re.compile(r"농협은행")),
)

_PREFIXED_MERCHANT = re.compile(r"^\d{5,6}_[가-힣a-zA-Z]")
_EXTENSION = re.compile(r"\.(xlsx?|csv)$", re.IGNORECASE)


def _first_match(text: str, table) -> Optional[str]:
    for name, pattern in table:
        if pattern.search(text):
            return name
    return None


def issuer_from_filename(filename: Optional[str]) -> Optional[str]:
    """Issuer named by the leading part of a file name, e.g. ``신한카드_2024.xlsx``."""
    if not filename:
        return None
    stem = _EXTENSION.sub("", filename.rsplit("/", 1)[-1])
    first = re.split(r"[_\-]", stem)[0].strip()
    return _first_match(first, CARD_ISSUERS) or _first_match(first, BANK_ISSUERS)


def issuer_from_structure(grid: Grid, depth: int = 50) -> Optional[str]:
    """Detect the issuer whose merchants carry a ``NNNNN_`` prefix."""
    hits = 0
    for row in grid[:depth]:
        for cell in row:
            if cell is not None and _PREFIXED_MERCHANT.match(str(cell).strip()):
                hits += 1
    if hits >= 2:
        logger.debug("issuer_from_structure", issuer="하나카드", hits=hits)
        return "하나카드"
    return None


def issuer_from_content(grid: Grid, depth: int = 20) -> Optional[str]:
    cards = set()
    banks = set()
    for row in grid[:depth]:
        for cell in row:
            if cell is None:
                continue
            text = str(cell).strip()
            card = _first_match(text, CARD_ISSUERS)
            if card:
                cards.add(card)
                continue
            bank = _first_match(text, BANK_ISSUERS)
            if bank:
                banks.add(bank)
    for name, _ in CARD_ISSUERS:
        if name in cards:
            return name
    for name, _ in BANK_ISSUERS:
        if name in banks:
            return name
    return None


def guess_issuer(filename: Optional[str], grid: Optional[Grid] = None) -> Optional[str]:
    """Best-effort issuer name from the file name, then the sheet contents."""
    issuer = issuer_from_filename(filename)
    if issuer:
        return issuer
    if not grid:
        return None
    return issuer_from_structure(grid) or issuer_from_content(grid)


def is_card_issuer(issuer: Optional[str]) -> bool:
    if not issuer:
        return False
    return "카드" in issuer or "card" in issuer.lower()


def classify_source(source_tag: Optional[str]) -> Optional[str]:
    """Label a source as bank or card, e.g. ``[카드] 신한카드``."""
    if not source_tag:
        return None
    if source_tag.startswith("[은행]") or source_tag.startswith("[카드]"):
        return source_tag
    lowered = source_tag.lower()
    if "은행" in source_tag or "bank" in lowered:
        return f"[은행] {source_tag}"
    return f"[카드] {source_tag}"
