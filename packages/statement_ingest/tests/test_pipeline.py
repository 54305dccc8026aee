import pytest

from ..config import PipelineSettings
from ..errors import ExtractionError, PersistenceError
from ..models import Direction, ExclusionPattern, PersistedTransaction, TransactionCandidate
from ..pipeline import (
    ProgressTracker,
    batch_date_range,
    matches_exclusion,
    persist_candidates,
    run_import,
    run_import_many,
)
from ..storage import InMemoryTransactionStore
from .conftest import TODAY, build_xlsx

BANK_ROWS = [
    ["거래내역 조회"],
    ["계좌번호", "1002-123-456789"],
    ["거래일시", "적요", "출금액", "입금액", "잔액", "내용"],
    ["2024-03-05 09:10:00", "체크카드", 4500, None, 95500, "스타벅스 강남점"],
    ["2024-03-05 09:10:00", "체크카드", 4500, None, 91000, "스타벅스 강남점"],
    ["2024-03-10 12:00:00", "카드대금", 300000, None, 0, "신한"],
    ["2024-03-25 08:00:00", "급여", None, 3000000, 3000000, "주식회사 에이비씨"],
    ["2024-03-26 19:30:00", "자동이체", 55000, None, 2945000, "SK텔레콤"],
]


@pytest.fixture
def bank_statement():
    return build_xlsx({"거래내역": BANK_ROWS})


def _run(content, store, settings, filename="우리은행_거래내역.xlsx", **kwargs):
    return run_import(content, filename, store=store, settings=settings, today=TODAY, **kwargs)


class TestRunImport:
    def test_withdrawal_deposit_statement(self, make_xlsx, store, settings):
        content = make_xlsx(
            {
                "Sheet1": [
                    ["거래일자", "출금(원)", "입금(원)", "내용"],
                    ["2024-03-05", "10,000", None, "스타벅스 강남점"],
                ]
            }
        )

        result = _run(content, store, settings, filename="statement.xlsx")

        assert len(result.candidates) == 1
        candidate = result.candidates[0]
        assert candidate.date == "2024-03-05"
        assert candidate.amount == 10000
        assert candidate.direction == Direction.EXPENSE
        assert candidate.merchant == "스타벅스 강남점"
        assert candidate.category_id == 2

    def test_parenthesized_amount_csv(self, store, settings):
        content = '일자,금액\n2024-03-05,"(5,000)"\n2024-03-06,"12,000"\n'.encode("utf-8")

        result = _run(content, store, settings, filename="export.csv")

        first, second = result.candidates
        assert first.direction == Direction.EXPENSE
        assert first.amount == 5000
        assert second.direction == Direction.INCOME
        assert result.issuer is None

    def test_headerless_csv_with_serial_range_amounts(self, store, settings):
        content = (
            "2024-03-05,스타벅스 강남점,35000\n"
            "2024-03-06,이마트 성수점,42000\n"
            "2024-03-07,교보문고 광화문,51000\n"
            "2024-03-08,올리브영 강남점,38000\n"
        ).encode("utf-8")

        result = _run(content, store, settings, filename="export.csv")

        assert result.mapping.as_dict() == {
            "column_1": "date",
            "column_2": "merchant",
            "column_3": "amount",
        }
        assert result.rows_rejected == 0
        assert [c.amount for c in result.candidates] == [35000, 42000, 51000, 38000]
        assert [c.date for c in result.candidates] == [
            "2024-03-05",
            "2024-03-06",
            "2024-03-07",
            "2024-03-08",
        ]

    def test_bank_statement_batch(self, bank_statement, store, settings):
        result = _run(bank_statement, store, settings)

        assert result.issuer == "우리은행"
        assert result.sheet_name == "거래내역"
        assert result.total_rows_seen == 5
        assert result.duplicates_removed == 1
        assert result.excluded_by_pattern == 1
        assert result.rows_rejected == 0
        assert [c.merchant for c in result.candidates] == [
            "스타벅스 강남점",
            "주식회사 에이비씨",
            "SK텔레콤",
        ]

        coffee, salary, phone = result.candidates
        assert coffee.time == "09:10:00"
        assert coffee.memo == "체크카드"
        assert coffee.source_tag == "우리은행"
        assert coffee.category_id == 2
        assert salary.direction == Direction.INCOME
        assert salary.category_id is None
        assert phone.category_id == 4
        assert result.mapping.as_dict() == {
            "거래일시": "date",
            "적요": "memo",
            "출금액": "withdrawal",
            "입금액": "deposit",
            "내용": "merchant",
        }

    def test_exclude_income(self, bank_statement, store, settings):
        result = _run(bank_statement, store, settings, exclude_income=True)

        assert result.income_excluded == 1
        assert all(c.direction == Direction.EXPENSE for c in result.candidates)

    def test_import_writes_nothing(self, bank_statement, store, settings):
        _run(bank_statement, store, settings)
        assert store.transactions == {}

    def test_reports_possible_duplicates_of_stored_records(self, bank_statement, categories, settings):
        store = InMemoryTransactionStore(
            categories=categories,
            transactions=[
                PersistedTransaction(
                    id=1, date="2024-03-05", time="09:12:00", amount=4500, merchant="스타벅스 강남점"
                ),
                PersistedTransaction(id=2, date="2024-01-05", amount=4500, merchant="스타벅스 강남점"),
            ],
        )

        result = _run(bank_statement, store, settings)

        assert len(result.duplicate_matches) == 1
        match = result.duplicate_matches[0]
        assert match.existing.id == 1
        assert match.candidate.merchant == "스타벅스 강남점"
        assert match.score == 1.0
        # Reported, not removed. No exclusion patterns here, so 카드대금 stays.
        assert len(result.candidates) == 4

    def test_rows_without_dates_or_amounts_are_counted(self, make_xlsx, store, settings):
        content = make_xlsx(
            {
                "Sheet1": [
                    ["이용일자", "가맹점명", "이용금액"],
                    ["2024-03-05", "스타벅스", 0],
                    ["미정", "이마트", 12000],
                ]
            }
        )

        result = _run(content, store, settings, filename="statement.xlsx")

        assert result.candidates == []
        assert result.rows_rejected == 2
        assert result.rejection_reasons == {"zero_amount": 1, "missing_date": 1}

    def test_unreadable_file_raises(self, store, settings):
        with pytest.raises(ExtractionError):
            _run(b"", store, settings)

    def test_progress_callback(self, bank_statement, store, settings):
        seen = []

        _run(bank_statement, store, settings, progress_callback=seen.append)

        assert seen == [20, 40, 60, 80, 100]


class TestRunImportMany:
    def test_batch_dedups_across_files(self, bank_statement, store, settings):
        result = run_import_many(
            [(bank_statement, "우리은행_3월.xlsx"), (bank_statement, "우리은행_3월_사본.xlsx")],
            store=store,
            settings=settings,
            today=TODAY,
        )

        assert result.total_rows_seen == 10
        assert len(result.candidates) == 3
        assert result.duplicates_removed == 6
        assert result.failed_files == {}

    def test_failed_file_is_skipped(self, bank_statement, store, settings):
        result = run_import_many(
            [(bank_statement, "우리은행_3월.xlsx"), (b"", "broken.xlsx")],
            store=store,
            settings=settings,
            today=TODAY,
        )

        assert len(result.candidates) == 3
        assert list(result.failed_files) == ["broken.xlsx"]

    def test_all_files_failing_raises(self, store, settings):
        with pytest.raises(ExtractionError, match="No file could be imported"):
            run_import_many([(b"", "a.xlsx"), (b"", None)], store=store, settings=settings)

    def test_no_files_raises(self, store, settings):
        with pytest.raises(ExtractionError):
            run_import_many([], store=store, settings=settings)


class TestPersistCandidates:
    def test_inserts_in_order_and_labels_source(self, bank_statement, store, settings):
        result = _run(bank_statement, store, settings)

        report = persist_candidates(result.candidates, store)

        assert report.inserted_ids == [1, 2, 3]
        assert report.skipped_existing == 0
        assert store.transactions[1].merchant == "스타벅스 강남점"
        assert store.transactions[1].source_tag == "[은행] 우리은행"
        assert store.transactions[3].category_id == 4
        # Candidates themselves are left untouched.
        assert result.candidates[0].source_tag == "우리은행"

    def test_existing_records_are_skipped(self, bank_statement, store, settings):
        result = _run(bank_statement, store, settings)
        persist_candidates(result.candidates, store)

        again = persist_candidates(result.candidates, store)

        assert again.inserted_ids == []
        assert again.skipped_existing == 3

        forced = persist_candidates(result.candidates, store, skip_existing=False)
        assert forced.inserted_ids == [4, 5, 6]

    def test_skip_existing_default_comes_from_settings(self, bank_statement, store, settings):
        result = _run(bank_statement, store, settings)
        persist_candidates(result.candidates, store)

        again = persist_candidates(
            result.candidates, store, settings=PipelineSettings(SKIP_EXISTING=False)
        )

        assert again.inserted_ids == [4, 5, 6]
        assert again.skipped_existing == 0

    def test_duplicates_within_one_call_are_skipped(self, store):
        candidate = TransactionCandidate(
            date="2024-03-05", amount=4500.0, direction=Direction.EXPENSE, merchant="스타벅스"
        )

        report = persist_candidates([candidate, candidate], store)

        assert report.inserted_ids == [1]
        assert report.skipped_existing == 1

    def test_empty_batch(self, store):
        assert persist_candidates([], store).inserted_ids == []

    def test_storage_failure_keeps_the_batch(self, categories):
        class FlakyStore(InMemoryTransactionStore):
            def add_transaction(self, candidate):
                if len(self.transactions) == 1:
                    raise RuntimeError("disk full")
                return super().add_transaction(candidate)

        candidates = [
            TransactionCandidate(date="2024-03-05", amount=1.0, direction=Direction.EXPENSE, merchant="A"),
            TransactionCandidate(date="2024-03-05", amount=2.0, direction=Direction.EXPENSE, merchant="B"),
            TransactionCandidate(date="2024-03-05", amount=3.0, direction=Direction.EXPENSE, merchant="C"),
        ]

        with pytest.raises(PersistenceError) as exc:
            persist_candidates(candidates, FlakyStore(categories=categories))

        error = exc.value
        assert error.inserted_ids == [1]
        assert error.failed_index == 1
        assert error.candidates == candidates
        assert isinstance(error.cause, RuntimeError)

    def test_read_failure_is_a_persistence_error(self):
        class BrokenStore(InMemoryTransactionStore):
            def get_transactions(self, date_range=None):
                raise ConnectionError("unreachable")

        candidate = TransactionCandidate(date="2024-03-05", amount=1.0, direction=Direction.EXPENSE)

        with pytest.raises(PersistenceError) as exc:
            persist_candidates([candidate], BrokenStore())

        assert exc.value.inserted_ids == []
        assert exc.value.failed_index == 0


class TestHelpers:
    @pytest.mark.parametrize(
        "kind, merchant, memo, source_tag, expected",
        [
            ("merchant", "하나카드대금", None, None, True),
            ("merchant", None, "카드대금", None, False),
            ("memo", None, "카드대금 출금", None, True),
            ("both", None, "카드대금", None, True),
            ("account", "카드대금", None, "하나카드 카드대금", True),
            ("account", "카드대금", None, None, False),
        ],
    )
    def test_matches_exclusion(self, kind, merchant, memo, source_tag, expected):
        candidate = TransactionCandidate(
            date="2024-03-05",
            amount=1.0,
            direction=Direction.EXPENSE,
            merchant=merchant,
            memo=memo,
            source_tag=source_tag,
        )
        pattern = ExclusionPattern(id=1, pattern="카드대금", kind=kind)

        assert matches_exclusion(candidate, pattern) is expected

    def test_batch_date_range(self):
        candidates = [
            TransactionCandidate(date="2024-03-05", amount=1.0, direction=Direction.EXPENSE),
            TransactionCandidate(date="2024-02-29", amount=1.0, direction=Direction.EXPENSE),
        ]

        date_range = batch_date_range(candidates, pad_days=1)

        assert (date_range.start, date_range.end) == ("2024-02-28", "2024-03-06")
        assert batch_date_range([]) is None

    def test_progress_tracker_with_no_rows(self):
        seen = []
        tracker = ProgressTracker(0, seen.append)
        tracker.update()
        tracker.finish()
        assert seen == [100]
