"""FastAPI dependencies shared by the routers.

The transaction store is a process-wide in-memory store seeded with the
default categories. Tests override ``get_store`` with their own instance.
"""

from typing import Optional

from apps.api.core.config import Settings, settings
from packages.statement_ingest.config import PipelineSettings, get_pipeline_settings
from packages.statement_ingest.models import Category, Direction
from packages.statement_ingest.storage import InMemoryTransactionStore, TransactionStore

DEFAULT_CATEGORIES = [
    Category(id=1, name="식비"),
    Category(id=2, name="카페/간식"),
    Category(id=3, name="교통"),
    Category(id=4, name="통신"),
    Category(id=5, name="쇼핑"),
    Category(id=6, name="문화"),
    Category(id=7, name="의료"),
    Category(id=8, name="급여", type=Direction.INCOME),
]

_store: Optional[InMemoryTransactionStore] = None


def get_store() -> TransactionStore:
    global _store
    if _store is None:
        _store = InMemoryTransactionStore(categories=DEFAULT_CATEGORIES)
    return _store


def get_app_settings() -> Settings:
    return settings


def get_import_settings() -> PipelineSettings:
    return get_pipeline_settings()
