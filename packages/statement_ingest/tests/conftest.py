import io
from datetime import date
from typing import Dict, List

import pytest
from openpyxl import Workbook

from ..config import PipelineSettings
from ..models import Category, CategoryRule, ExclusionPattern
from ..storage import InMemoryTransactionStore

TODAY = date(2026, 10, 18)


def build_xlsx(sheets: Dict[str, List[list]]) -> bytes:
    """Write ``{sheet name: rows}`` to an in-memory .xlsx file."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(title=name)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def make_xlsx():
    return build_xlsx


@pytest.fixture
def settings():
    return PipelineSettings(STRICT_DEDUP=False)


@pytest.fixture
def categories():
    return [
        Category(id=1, name="식비"),
        Category(id=2, name="카페/간식"),
        Category(id=3, name="교통"),
        Category(id=4, name="통신"),
        Category(id=5, name="쇼핑"),
        Category(id=6, name="문화"),
        Category(id=7, name="의료"),
        Category(id=8, name="현금영수증", exclude_from_stats=True),
    ]


@pytest.fixture
def store(categories):
    return InMemoryTransactionStore(
        categories=categories,
        rules=[
            CategoryRule(id=1, pattern="SK텔레콤", category_id=5, priority=10),
            CategoryRule(id=2, pattern="월급", category_id=6, target_field="memo"),
        ],
        exclusion_patterns=[ExclusionPattern(id=1, pattern="카드대금", kind="both")],
    )
