"""Multi-locale keyword tables used to recognize headers and special rows.

Each table is plain data. ``compile_keywords`` turns a table into a single
regular expression: ASCII words get alphanumeric boundaries so that "cr"
does not fire inside "description", everything else is a substring match.
"""

import re
from typing import Dict, Iterable, Optional, Tuple

from .models import ColumnRole


def _is_ascii_word(keyword: str) -> bool:
    return keyword.isascii() and any(ch.isalpha() for ch in keyword)


def compile_keywords(keywords: Iterable[str]) -> re.Pattern:
    parts = []
    for keyword in sorted(set(keywords), key=len, reverse=True):
        escaped = re.escape(keyword.lower())
        if _is_ascii_word(keyword):
            parts.append(rf"(?<![a-z0-9]){escaped}(?![a-z0-9])")
        else:
            parts.append(escaped)
    return re.compile("|".join(parts), re.IGNORECASE)


def normalize_label(value) -> str:
    """Header form used for matching: no line breaks, trimmed, lower-case."""
    if value is None:
        return ""
    return re.sub(r"[\r\n]+", "", str(value)).strip().lower()


# Ordered: the first role whose table matches a header wins.
ROLE_KEYWORDS: Dict[ColumnRole, Tuple[str, ...]] = {
    ColumnRole.DATE: (
        "거래일자", "거래일시", "사용일자", "이용일자", "승인일자", "승인일시",
        "매출일자", "거래월일", "거래일", "이용일", "승인일", "날짜", "일자", "일시",
        "date", "posting date", "value date", "trans date",
        "日付", "取引日", "利用日", "日期", "交易日期",
    ),
    ColumnRole.TIME: (
        "거래시간", "이용시간", "승인시간", "승인시각", "시간", "시각",
        "time", "時間", "时间", "時刻",
    ),
    ColumnRole.TYPE: (
        "입출금구분", "입출구분", "거래구분", "승인구분", "거래유형", "취소여부",
        "type", "dr/cr", "cr/dr", "取引区分", "交易类型",
    ),
    ColumnRole.WITHDRAWAL: (
        "출금", "찾으신", "인출", "지급", "지출",
        "withdrawal", "withdrawals", "debit", "debits", "money out", "outflow",
        "出金", "お引出し", "支出",
    ),
    ColumnRole.DEPOSIT: (
        "입금", "맡기신", "수입",
        "deposit", "deposits", "credit", "credits", "money in", "inflow",
        "入金", "お預入れ", "收入", "存入",
    ),
    ColumnRole.AMOUNT: (
        "이용금액", "승인금액", "청구금액", "매출금액", "결제금액", "거래금액",
        "내실금액", "공급가액", "금액",
        "amount", "amt", "price", "value", "sum",
        "金額", "利用金額", "金额",
    ),
    ColumnRole.MERCHANT: (
        "가맹점명", "이용가맹점", "가맹점(상호)", "가맹점", "사용처", "상호", "거래처",
        "내용", "받는분", "보낸분",
        "merchant", "store", "payee", "description", "details", "narration",
        "particulars",
        "加盟店", "利用店名", "ご利用先", "商户", "交易对方",
    ),
    ColumnRole.MEMO: (
        "메모", "비고", "적요", "상세",
        "memo", "note", "notes", "remarks",
        "摘要", "備考", "备注",
    ),
    ColumnRole.ACCOUNT: (
        "카드명", "카드구분", "카드번호", "이용카드", "계좌번호", "계좌",
        "account", "card", "card member",
        "カード", "账户", "卡号",
    ),
}

# Headers that mention money but are never the transaction value.
AMOUNT_DENY_KEYWORDS: Tuple[str, ...] = (
    "혜택금액", "할인금액", "수수료", "포인트", "마일리지", "적립", "잔액", "잔고",
    "누계", "합계", "이자",
    "balance", "fee", "fees", "point", "points", "total", "interest", "reward",
    "残高", "手数料", "余额", "手续费",
)

MONEY_ROLES = (ColumnRole.WITHDRAWAL, ColumnRole.DEPOSIT, ColumnRole.AMOUNT)

# Per-role exclusions: "일시불" is a payment plan, "가맹점번호" is an id.
ROLE_DENY_KEYWORDS: Dict[ColumnRole, Tuple[str, ...]] = {
    ColumnRole.DATE: ("일시불", "결제일", "결제예정", "update", "due date"),
    ColumnRole.MERCHANT: (
        "번호", "코드", "사업자", "업종", "no", "number", "code", "id", "category",
    ),
}
for _role in MONEY_ROLES:
    ROLE_DENY_KEYWORDS[_role] = AMOUNT_DENY_KEYWORDS

ROLE_PATTERNS: Dict[ColumnRole, re.Pattern] = {
    role: compile_keywords(words) for role, words in ROLE_KEYWORDS.items()
}
ROLE_DENY_PATTERNS: Dict[ColumnRole, re.Pattern] = {
    role: compile_keywords(words) for role, words in ROLE_DENY_KEYWORDS.items()
}
AMOUNT_DENY_PATTERN = ROLE_DENY_PATTERNS[ColumnRole.AMOUNT]

# Money vocabulary used by header-row discovery (amount plus both directions).
MONEY_HEADER_PATTERN = compile_keywords(
    ROLE_KEYWORDS[ColumnRole.AMOUNT]
    + ROLE_KEYWORDS[ColumnRole.WITHDRAWAL]
    + ROLE_KEYWORDS[ColumnRole.DEPOSIT]
)

# Single amount columns on card statements: positive means a purchase.
CARD_AMOUNT_PATTERN = compile_keywords(
    ("이용금액", "내실금액", "청구금액", "승인금액", "결제금액", "利用金額")
)

# Free-text type hints found in "type" columns.
WITHDRAWAL_HINT_PATTERN = compile_keywords(
    ("출금", "지출", "인출", "withdrawal", "debit", "dr", "出金", "支出")
)
DEPOSIT_HINT_PATTERN = compile_keywords(
    ("입금", "수입", "deposit", "credit", "cr", "入金", "收入")
)

ACCOUNT_NUMBER_PATTERN = compile_keywords(
    ("계좌번호", "account number", "account no", "a/c no", "口座番号", "账号")
)

GRAND_TOTAL_PATTERN = compile_keywords(("총합계", "총계", "grand total", "総合計", "总计"))
SUBTOTAL_PATTERN = compile_keywords(
    (
        "할부 합계", "일시불 합계", "해외이용 합계", "카드소계", "소계", "합계",
        "subtotal", "sub total", "小計", "小计",
    )
)

# Single-cell rows that describe the card rather than a transaction.
CARD_DESCRIPTION_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"카드.*(본인|가족|직원)|(본인|가족|직원).*카드"),
    re.compile(r"생활밀착형"),
)


def match_role(label: str) -> Optional[ColumnRole]:
    """Role for a normalized header label, or None."""
    if not label:
        return None
    for role, pattern in ROLE_PATTERNS.items():
        if not pattern.search(label):
            continue
        deny = ROLE_DENY_PATTERNS.get(role)
        if deny is not None and deny.search(label):
            continue
        return role
    return None
