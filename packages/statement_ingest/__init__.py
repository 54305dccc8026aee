"""
Statement Ingest

Bank and card statement spreadsheets in, deduplicated and categorized
transaction candidates out.
"""

__version__ = "0.1.0"

from .errors import ExtractionError, PersistenceError, StatementImportError
from .excel_parser import parse_statement_file
from .pipeline import ImportResult, PersistReport, persist_candidates, run_import, run_import_many
from .storage import InMemoryTransactionStore, TransactionStore

__all__ = [
    "ExtractionError",
    "PersistenceError",
    "StatementImportError",
    "parse_statement_file",
    "ImportResult",
    "PersistReport",
    "persist_candidates",
    "run_import",
    "run_import_many",
    "InMemoryTransactionStore",
    "TransactionStore",
]
