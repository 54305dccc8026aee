"""Pipeline tunables via Pydantic Settings.

Every value can be overridden with a ``STATEMENT_INGEST_`` environment
variable, e.g. ``STATEMENT_INGEST_FUZZY_THRESHOLD=0.9``.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class PipelineSettings(BaseSettings):
    """Heuristic limits and defaults for one import run."""

    # Extraction
    HEADER_SCAN_DEPTH: int = Field(
        default=50, description="Rows scanned for section markers and header vocabulary"
    )
    HEADER_MERGE_DEPTH: int = Field(
        default=5, description="Rows below the header that may continue its labels"
    )
    ACCOUNT_SCAN_WINDOW: int = Field(
        default=15, description="Rows scanned below a bank marker for the header"
    )

    # Classification
    CONTENT_SAMPLE_SIZE: int = Field(
        default=30, description="Rows sampled by the content-based classifier"
    )
    CONTENT_RATIO_THRESHOLD: float = Field(
        default=0.30, description="Minimum share of matching cells to assign a role"
    )

    # Deduplication and filtering
    STRICT_DEDUP: bool = Field(
        default=True, description="Ignore merchant/memo in the intra-batch key"
    )
    FUZZY_THRESHOLD: float = Field(
        default=0.95, description="Score at which a persisted record is reported"
    )
    EXCLUDE_INCOME: bool = Field(default=False, description="Drop income rows")
    SKIP_EXISTING: bool = Field(
        default=True, description="Skip candidates already present in storage"
    )

    model_config = {"env_prefix": "STATEMENT_INGEST_", "extra": "ignore"}


def get_pipeline_settings() -> PipelineSettings:
    """Factory for PipelineSettings, patched in tests."""
    return PipelineSettings()
