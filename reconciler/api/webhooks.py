"""Provider webhook routes."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reconciler.auth.signature import verify_webhook_signature
from reconciler.config import Settings, get_settings
from reconciler.schemas.schemas import (
    ProviderWebhookPayload,
    WebhookErrorResponse,
    WebhookMetadata,
    WebhookResult,
)
from reconciler.services.classifier import JobHint
from reconciler.services.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


def get_reconciler(request: Request) -> WebhookReconciler:
    """Reconciler wired at application startup."""
    return request.app.state.reconciler


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _error_response(status_code: int, error: str, started: float) -> JSONResponse:
    body = WebhookErrorResponse(
        error=error,
        timestamp=datetime.now(timezone.utc),
        processing_time=_elapsed_ms(started),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", by_alias=True))


@router.post(
    "/replicate",
    summary="Provider prediction callback",
    description="Receive a status callback for a generation, upscale, edit, video or training job.",
    responses={
        400: {"model": WebhookErrorResponse, "description": "Malformed payload"},
        401: {"description": "Invalid signature"},
        500: {"model": WebhookErrorResponse, "description": "Processing failed"},
    },
)
async def replicate_webhook(
    request: Request,
    job_type: Optional[str] = Query(None, alias="type", description="Job kind hint"),
    record_id: Optional[str] = Query(None, alias="id", description="Local record id hint"),
    model_id: Optional[str] = Query(None, alias="modelId", description="Training model id hint"),
    user_id: Optional[str] = Query(None, alias="userId", description="Owner id hint"),
    settings: Settings = Depends(get_settings),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Reconcile one provider callback.

    - **type**: generation, upscale, edit, video or training
    - **id** / **modelId**: local record id for a direct lookup
    - **userId**: owner of the record

    Hints are optional; without them the job is found by provider id.
    """
    started = time.perf_counter()
    body = await request.body()

    if settings.webhook_signing_enabled:
        if not verify_webhook_signature(
            body, request.headers, settings.webhook_secret, settings.webhook_tolerance_seconds
        ):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": "Invalid signature"},
            )
    else:
        logger.warning("Webhook secret not configured, accepting unsigned callback (degraded security)")

    try:
        payload = ProviderWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Rejected malformed webhook payload: {e.error_count()} validation error(s)")
        return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid webhook payload", started)

    hint = None
    if job_type:
        hint = JobHint(kind=job_type, record_id=model_id or record_id, owner_id=user_id)

    try:
        outcome = await asyncio.wait_for(
            reconciler.handle(payload, hint),
            timeout=settings.webhook_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            f"Webhook processing timed out after {settings.webhook_timeout_seconds}s job={payload.id}"
        )
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing timed out", started)
    except Exception as e:
        logger.exception(f"Webhook processing failed job={payload.id} status={payload.status.value}")
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e) or type(e).__name__, started)

    if not outcome.found:
        logger.info(f"Ignoring callback for unknown provider job {payload.id}")
        return {
            "success": True,
            "message": outcome.message,
            "jobId": payload.id,
        }

    processing_time = _elapsed_ms(started)
    logger.info(
        f"Webhook processed job={outcome.job_id} type={outcome.job_type} status={outcome.status} "
        f"updated={outcome.updated} refunded={outcome.refunded} in {processing_time}ms"
    )

    metadata = WebhookMetadata(
        external_job_id=payload.id,
        provider_status=payload.status.value,
        hinted=hint is not None,
        payload_size=len(body),
        provider_total_time=payload.total_time,
    )
    result = WebhookResult(
        type=outcome.job_type,
        job_id=outcome.job_id,
        status=outcome.status,
        updated=outcome.updated,
        refunded=outcome.refunded,
        result_urls=outcome.result_urls,
        message=outcome.message,
    )
    return {
        "success": True,
        "jobType": outcome.job_type,
        "processingTime": processing_time,
        "metadata": metadata.model_dump(by_alias=True),
        "result": result.model_dump(by_alias=True),
    }
