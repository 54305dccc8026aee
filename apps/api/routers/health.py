"""Health check router: liveness + readiness.

Readiness reads the category list from the transaction store with a short
timeout, since every import starts with that read.
"""

import asyncio

import structlog
from fastapi import APIRouter, Depends

from apps.api.core.config import settings
from apps.api.deps import get_store
from packages.statement_ingest.storage import TransactionStore

router = APIRouter(tags=["health"])
logger = structlog.get_logger()

STORE_TIMEOUT_SECONDS = 2


@router.get("/health")
async def health_liveness():
    """Liveness probe: returns 200 if the API process is running."""
    return {"status": "healthy", "service": "api", "version": settings.APP_VERSION}


@router.get("/health/ready")
async def health_readiness(store: TransactionStore = Depends(get_store)):
    """Readiness probe: checks the transaction store answers."""
    status = {
        "status": "healthy",
        "services": {
            "api": "up",
            "store": "unknown",
        },
    }

    try:
        loop = asyncio.get_running_loop()
        await asyncio.wait_for(
            loop.run_in_executor(None, store.get_categories),
            timeout=STORE_TIMEOUT_SECONDS,
        )
        status["services"]["store"] = "up"
    except asyncio.TimeoutError:
        status["services"]["store"] = "timeout"
        status["status"] = "degraded"
        logger.warning("store_health_timeout", timeout_s=STORE_TIMEOUT_SECONDS)
    except Exception as e:
        status["services"]["store"] = "down"
        status["status"] = "degraded"
        logger.warning("store_health_failed", error=str(e))

    return status
