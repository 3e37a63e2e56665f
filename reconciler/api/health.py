"""Health check routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from reconciler.api.webhooks import get_reconciler
from reconciler.schemas.schemas import HealthResponse
from reconciler.services.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])

VERSION = "1.0.0"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(reconciler: WebhookReconciler = Depends(get_reconciler)):
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection (realtime fan-out)
    - Object storage connection
    """
    redis_status = "ok" if await reconciler.publisher.ping() else "error"

    storage_ok = await run_in_threadpool(reconciler.media.storage.health_check)
    storage_status = "ok" if storage_ok else "error"

    db_status = "ok"
    try:
        async with reconciler.session_factory() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    overall_status = "healthy"
    if any(s == "error" for s in [redis_status, storage_status, db_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=VERSION,
        database=db_status,
        redis=redis_status,
        storage=storage_status,
    )
