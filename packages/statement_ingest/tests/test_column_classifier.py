from ..column_classifier import classify_by_name, classify_columns, profile_columns
from ..models import ColumnRole, RawSheet
from .conftest import TODAY


def _synthetic(rows):
    headers = [f"column_{i + 1}" for i in range(len(rows[0]))]
    return RawSheet(
        headers=headers,
        rows=[dict(zip(headers, row)) for row in rows],
        synthetic_headers=True,
    )


def test_roles_from_header_names(settings):
    headers = ["이용일자", "이용시간", "가맹점명", "이용금액", "할인금액", "비고"]
    sheet = RawSheet(headers=headers, rows=[dict.fromkeys(headers)])

    mapping = classify_columns(sheet, settings)

    assert mapping.as_dict() == {
        "이용일자": "date",
        "이용시간": "time",
        "가맹점명": "merchant",
        "이용금액": "amount",
        "비고": "memo",
    }
    assert mapping.gap is None


def test_leftmost_header_wins():
    pairs = classify_by_name(["거래일자", "승인일자", "금액"])
    assert [(p.source, p.role) for p in pairs] == [
        ("거래일자", ColumnRole.DATE),
        ("금액", ColumnRole.AMOUNT),
    ]


def test_headerless_sheet_is_classified_by_content(settings):
    sheet = _synthetic(
        [
            ["2024-03-01", "스타벅스 강남점", 4500, None, "체크"],
            ["2024-03-02", "이마트 성수점", 82000, None, "체크"],
            ["2024-03-03", "주식회사 에이비씨 급여", None, 3000000, "이체"],
            ["2024-03-04", "GS25 역삼점", 3200, None, "체크"],
            ["2024-03-05", "홍길동 송금", None, 25000, "이체"],
            ["2024-03-06", "교보문고 광화문", 15000, None, "체크"],
        ]
    )

    mapping = classify_columns(sheet, settings, today=TODAY)

    assert mapping.column_for(ColumnRole.DATE) == "column_1"
    assert mapping.column_for(ColumnRole.MERCHANT) == "column_2"
    assert mapping.column_for(ColumnRole.WITHDRAWAL) == "column_3"
    assert mapping.column_for(ColumnRole.DEPOSIT) == "column_4"
    assert mapping.column_for(ColumnRole.MEMO) == "column_5"
    assert mapping.gap is None


def test_clustered_serial_numbers_are_dates(settings):
    sheet = _synthetic(
        [
            [45356, "스타벅스", -4500],
            [45357, "이마트", -12000],
            [45358, "환불", 3000],
        ]
    )

    mapping = classify_columns(sheet, settings, today=TODAY)

    assert mapping.column_for(ColumnRole.DATE) == "column_1"
    assert mapping.column_for(ColumnRole.AMOUNT) == "column_3"
    assert mapping.column_for(ColumnRole.MERCHANT) == "column_2"


def test_spread_out_serial_range_numbers_are_not_dates():
    profiles = profile_columns([{"n": 31000}, {"n": 60000}], ["n"])
    assert profiles["n"].date_ratio == 0.0
    assert profiles["n"].amount_ratio == 1.0

    profiles = profile_columns([{"n": 45356}, {"n": 45357}], ["n"])
    assert profiles["n"].date_ratio == 1.0
    assert profiles["n"].text_date_ratio == 0.0


def test_serial_shaped_amount_strings_stay_amounts(settings):
    sheet = _synthetic(
        [
            ["35000", "2024-03-05", "스타벅스 강남점"],
            ["42000", "2024-03-06", "이마트 성수점"],
            ["12500", "2024-03-07", "교보문고 광화문"],
            ["61000", "2024-03-08", "GS25 역삼점"],
        ]
    )

    mapping = classify_columns(sheet, settings, today=TODAY)

    assert mapping.column_for(ColumnRole.DATE) == "column_2"
    assert mapping.column_for(ColumnRole.AMOUNT) == "column_1"
    assert mapping.column_for(ColumnRole.MERCHANT) == "column_3"
    assert mapping.gap is None


def test_digit_strings_count_toward_serial_span():
    profiles = profile_columns([{"n": "31000"}, {"n": "60000"}], ["n"])
    assert profiles["n"].date_ratio == 0.0
    assert profiles["n"].amount_ratio == 1.0
    assert profiles["n"].text_date_ratio == 0.0


def test_content_fills_only_the_missing_money_role(settings):
    headers = ["거래일자", "가맹점", "KRW"]
    sheet = RawSheet(
        headers=headers,
        rows=[
            {"거래일자": "2024-03-05", "가맹점": "스타벅스", "KRW": "4,500"},
            {"거래일자": "2024-03-06", "가맹점": "GS25", "KRW": "3,200"},
        ],
    )

    mapping = classify_columns(sheet, settings)

    assert mapping.as_dict() == {"거래일자": "date", "가맹점": "merchant", "KRW": "amount"}


def test_unresolvable_sheet_reports_gap(settings):
    sheet = RawSheet(headers=["이름", "설명"], rows=[{"이름": "홍길동", "설명": "메모"}])

    mapping = classify_columns(sheet, settings)

    assert mapping.gap is not None
    assert mapping.gap.missing_roles == [ColumnRole.DATE, ColumnRole.AMOUNT]
    assert not mapping.has_amount
