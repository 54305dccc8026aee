import pytest

from ..issuers import (
    BANK_HISTORY,
    HANA_CARD,
    SHINHAN_CARD,
    AccountHeaderScan,
    FixedOffset,
    classify_source,
    guess_issuer,
    is_card_issuer,
    issuer_from_content,
    issuer_from_filename,
    issuer_from_structure,
    profile_for_issuer,
    profile_for_marker,
)


@pytest.mark.parametrize(
    "filename, issuer",
    [
        ("신한카드_거래내역.xlsx", "신한카드"),
        ("하나카드-2024-03.xls", "하나카드"),
        ("KB국민카드_202403.xlsx", "KB국민카드"),
        ("NH농협카드.csv", "NH농협카드"),
        ("신한은행_입출금.xlsx", "신한은행"),
        ("우리은행_거래내역.xlsx", "우리은행"),
        ("statement.xlsx", None),
        (None, None),
    ],
)
def test_issuer_from_filename(filename, issuer):
    assert issuer_from_filename(filename) == issuer


def test_structure_probe_needs_two_prefixed_merchants():
    grid = [["2024-03-05", "009844_SK텔레콤", 55000]]
    assert issuer_from_structure(grid) is None

    grid.append(["2024-03-06", "173903_롯데쇼핑", 12000])
    assert issuer_from_structure(grid) == "하나카드"


def test_content_probe_prefers_cards_over_banks():
    grid = [["하나은행 입금"], [None, "현대카드 이용내역"]]
    assert issuer_from_content(grid) == "현대카드"
    assert issuer_from_content([["우리은행 거래내역"]]) == "우리은행"
    assert issuer_from_content([["거래일자", "금액"]]) is None


def test_guess_issuer_filename_first():
    grid = [["현대카드 이용내역"]]
    assert guess_issuer("삼성카드_3월.xlsx", grid) == "삼성카드"
    assert guess_issuer("export.xlsx", grid) == "현대카드"
    assert guess_issuer(None, None) is None


def test_profiles_by_marker():
    assert profile_for_marker("하나카드 이용상세내역") is HANA_CARD
    assert profile_for_marker("이용일자별 매출내역") is SHINHAN_CARD
    assert profile_for_marker("거래내역 조회") is BANK_HISTORY
    assert profile_for_marker("Transaction History") is BANK_HISTORY
    assert profile_for_marker("월간 명세서") is None

    assert HANA_CARD.header_rule == FixedOffset(3)
    assert SHINHAN_CARD.header_rule == FixedOffset(1)
    assert isinstance(BANK_HISTORY.header_rule, AccountHeaderScan)


def test_hana_profile_strips_merchant_prefix():
    profile = profile_for_issuer("하나카드")
    assert profile is HANA_CARD
    assert profile.strip_merchant("009844_SK텔레콤") == "SK텔레콤"
    assert SHINHAN_CARD.strip_merchant("009844_SK텔레콤") == "009844_SK텔레콤"
    assert profile_for_issuer("국민은행") is None


def test_classify_source():
    assert classify_source("신한카드") == "[카드] 신한카드"
    assert classify_source("우리은행") == "[은행] 우리은행"
    assert classify_source("[카드] 신한카드") == "[카드] 신한카드"
    assert classify_source(None) is None


def test_is_card_issuer():
    assert is_card_issuer("하나카드")
    assert is_card_issuer("Shinhan Card")
    assert not is_card_issuer("우리은행")
    assert not is_card_issuer(None)
