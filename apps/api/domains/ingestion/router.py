"""Ingestion router: statement upload preview and commit endpoints.

Uploads are parsed, deduplicated and categorized without writing
anything; the client reviews the preview and posts the rows it keeps to
``/ingest/commit``.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile
from starlette.concurrency import run_in_threadpool

from apps.api.core.config import Settings
from apps.api.core.errors import BadRequestError, PayloadTooLargeError, ValidationError
from apps.api.deps import get_app_settings, get_import_settings, get_store
from apps.api.domains.ingestion import service
from apps.api.domains.ingestion.schemas import CommitRequest, CommitResponse, IngestResponse
from packages.statement_ingest.config import PipelineSettings
from packages.statement_ingest.pipeline import persist_candidates, run_import, run_import_many
from packages.statement_ingest.storage import TransactionStore

router = APIRouter(prefix="/ingest", tags=["ingestion"])
logger = structlog.get_logger()

ALLOWED_EXTENSIONS = (".csv", ".xls", ".xlsx")


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    filename = file.filename or ""
    if not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise BadRequestError(
            f"Unsupported file type. Accepted: {', '.join(ALLOWED_EXTENSIONS)}"
        )
    contents = await file.read()
    if len(contents) > settings.MAX_UPLOAD_BYTES:
        raise PayloadTooLargeError(
            f"File too large (max {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB)"
        )
    return contents


@router.post("/statement", response_model=IngestResponse)
async def ingest_statement(
    file: UploadFile = File(...),
    password: Optional[str] = Form(None),
    strict: Optional[bool] = Form(None),
    exclude_income: Optional[bool] = Form(None),
    store: TransactionStore = Depends(get_store),
    app_settings: Settings = Depends(get_app_settings),
    import_settings: PipelineSettings = Depends(get_import_settings),
):
    """Parse one bank or card statement and return a preview.

    Nothing is stored. Unreadable files surface as 422 Problem Details.
    """
    contents = await _read_upload(file, app_settings)
    result = await run_in_threadpool(
        run_import,
        contents,
        file.filename,
        store=store,
        settings=import_settings,
        password=password or None,
        strict=strict,
        exclude_income=exclude_income,
    )
    logger.info("ingest_preview", filename=file.filename, count=len(result.candidates))
    return service.build_preview(result)


@router.post("/statements", response_model=IngestResponse)
async def ingest_statements(
    files: list[UploadFile] = File(...),
    password: Optional[str] = Form(None),
    strict: Optional[bool] = Form(None),
    exclude_income: Optional[bool] = Form(None),
    store: TransactionStore = Depends(get_store),
    app_settings: Settings = Depends(get_app_settings),
    import_settings: PipelineSettings = Depends(get_import_settings),
):
    """Parse several statements as one batch; files that fail are listed, not fatal."""
    uploads = [(await _read_upload(f, app_settings), f.filename) for f in files]
    result = await run_in_threadpool(
        run_import_many,
        uploads,
        store=store,
        settings=import_settings,
        password=password or None,
        strict=strict,
        exclude_income=exclude_income,
    )
    logger.info("ingest_batch_preview", files=len(uploads), count=len(result.candidates))
    return service.build_preview(result)


@router.post("/commit", response_model=CommitResponse)
async def commit_transactions(
    payload: CommitRequest,
    store: TransactionStore = Depends(get_store),
    import_settings: PipelineSettings = Depends(get_import_settings),
):
    """Persist reviewed transactions in order.

    A storage failure returns 502 with the ids written before it.
    """
    if not payload.transactions:
        raise ValidationError("No transactions to commit")

    candidates = [service.to_candidate(t) for t in payload.transactions]
    report = await run_in_threadpool(
        persist_candidates,
        candidates,
        store,
        skip_existing=payload.skip_existing,
        settings=import_settings,
    )
    return CommitResponse(
        inserted_ids=report.inserted_ids,
        inserted=len(report.inserted_ids),
        skipped_existing=report.skipped_existing,
    )
