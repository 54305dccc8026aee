"""Layered category assignment.

Evaluation order, first hit wins:

1. built-in merchant heuristics (after issuer-specific merchant cleanup)
2. user rules, exact token match
3. user rules, regular-expression / substring match
4. category names found inside the merchant or memo
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .issuers import profile_for_issuer
from .models import Category, CategoryRule, TransactionCandidate

logger = structlog.get_logger(__name__)

_HANGUL_ONLY = re.compile(r"^[ㄱ-ㅎ가-힣]+$")


def _fold(value: Optional[str]) -> str:
    return re.sub(r"\s", "", (value or "").lower())


class MerchantHeuristics:
    """Fixed merchant keyword -> category name table."""

    # Each entry: keywords, then category names tried in order.
    TABLE: List[Tuple[Tuple[str, ...], Tuple[str, ...]]] = [
        (("롯데쇼핑", "롯데슈퍼", "홈플러스", "이마트"), ("식비",)),
        (("sk텔레콤", "통신요금", "kt", "lg유플러스"), ("통신",)),
        (("스타벅스", "이디야", "투썸", "메가커피", "커피"), ("카페/간식", "문화")),
        (("gs25", "cu", "세븐일레븐", "편의점"), ("식비",)),
        (("도미노피자", "피자", "치킨", "맥도날드", "버거킹"), ("식비",)),
        (("coupang", "쿠팡", "11번가", "네이버쇼핑"), ("쇼핑",)),
        (("넷플릭스", "멜론", "지니", "구독", "피치그로브"), ("문화",)),
        (("병원", "약국", "클리닉"), ("의료",)),
        (("주유소", "gs칼텍스", "sk에너지", "현대오일뱅크"), ("교통",)),
        (("지하철", "버스", "티머니", "카카오t", "택시"), ("교통",)),
    ]

    def __init__(self):
        self.entries = [
            (self._compile(keywords), names) for keywords, names in self.TABLE
        ]

    @staticmethod
    def _compile(keywords: Sequence[str]) -> re.Pattern:
        parts = []
        for keyword in keywords:
            # word boundary check for short keywords ("kt", "cu") so they do not
            # fire inside longer latin words
            if keyword.isascii() and len(keyword) <= 4:
                parts.append(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])")
            else:
                parts.append(re.escape(keyword))
        return re.compile("|".join(parts))

    def predict(self, merchant: str) -> Optional[Tuple[str, ...]]:
        """Category names for the first matching entry, or None."""
        if not merchant:
            return None
        text = merchant.lower()
        for pattern, names in self.entries:
            if pattern.search(text):
                return names
        return None


class Categorizer:
    """Assigns category ids from a snapshot of rules and categories."""

    def __init__(
        self,
        rules: Sequence[CategoryRule],
        categories: Sequence[Category],
        heuristics: Optional[MerchantHeuristics] = None,
    ):
        self.rules = sorted(
            (r for r in rules if r.is_active), key=lambda r: (-r.priority, r.id)
        )
        self.categories = [c for c in categories if not c.exclude_from_stats]
        self.by_name: Dict[str, int] = {c.name: c.id for c in self.categories}
        self.heuristics = heuristics or MerchantHeuristics()

    # -- tier 1 -----------------------------------------------------------

    def _from_heuristics(self, candidate: TransactionCandidate) -> Optional[int]:
        merchant = (candidate.merchant or "").strip()
        profile = profile_for_issuer(candidate.source_tag)
        if profile is not None:
            merchant = profile.strip_merchant(merchant)
        names = self.heuristics.predict(merchant)
        if names is None:
            return None
        for name in names:
            if name in self.by_name:
                return self.by_name[name]
        return None

    # -- tiers 2 and 3 ----------------------------------------------------

    @staticmethod
    def _field(rule: CategoryRule, candidate: TransactionCandidate) -> Optional[str]:
        return candidate.memo if rule.target_field == "memo" else candidate.merchant

    def _from_rules_exact(self, candidate: TransactionCandidate) -> Optional[int]:
        for rule in self.rules:
            value = self._field(rule, candidate)
            if not value:
                continue
            folded = _fold(value)
            if any(folded == _fold(token) for token in rule.tokens):
                return rule.category_id
        return None

    def _from_rules_pattern(self, candidate: TransactionCandidate) -> Optional[int]:
        for rule in self.rules:
            value = self._field(rule, candidate)
            if not value:
                continue
            for token in rule.tokens:
                try:
                    matched = re.search(token, value, re.IGNORECASE) is not None
                except re.error:
                    matched = _fold(token) in _fold(value)
                if matched:
                    return rule.category_id
        return None

    # -- tier 4 -----------------------------------------------------------

    def _from_category_names(self, candidate: TransactionCandidate) -> Optional[int]:
        merchant = _fold(candidate.merchant)
        memo = _fold(candidate.memo)
        for category in self.categories:
            for part in category.name.split("/"):
                part = _fold(part)
                if len(part) >= 3 or (len(part) == 2 and _HANGUL_ONLY.match(part)):
                    if part in merchant or part in memo:
                        return category.id
        return None

    def categorize(self, candidate: TransactionCandidate) -> Optional[int]:
        for tier in (
            self._from_heuristics,
            self._from_rules_exact,
            self._from_rules_pattern,
            self._from_category_names,
        ):
            category_id = tier(candidate)
            if category_id is not None:
                return category_id
        return None

    def categorize_many(self, candidates: Sequence[TransactionCandidate]) -> List[Optional[int]]:
        """One result per candidate, in input order."""
        results = [self.categorize(c) for c in candidates]
        logger.info(
            "candidates_categorized",
            total=len(results),
            assigned=sum(1 for r in results if r is not None),
        )
        return results
