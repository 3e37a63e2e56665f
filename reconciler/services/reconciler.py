"""Apply provider webhook callbacks to local job records."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.config import Settings, get_settings
from reconciler.db.models import (
    Generation,
    GenerationStatus,
    JobKind,
    TrainingModel,
    TrainingStatus,
)
from reconciler.schemas.schemas import ProviderStatus, ProviderWebhookPayload
from reconciler.services.classifier import ClassifiedJob, JobClassifier, JobHint
from reconciler.services.credits import CreditLedger
from reconciler.services.media import MediaPersister
from reconciler.services.realtime import (
    EVENT_GENERATION_STATUS_CHANGED,
    EVENT_MODEL_STATUS_CHANGED,
    RealtimePublisher,
)
from reconciler.services.storage import get_storage_service
from reconciler.services.storage_keys import MEDIA_IMAGE, MEDIA_VIDEO, category_for_kind

logger = logging.getLogger(__name__)

STORAGE_FAILED_MESSAGE = "Failed to store generated media"
NO_OUTPUT_MESSAGE = "No output provided by provider"


@dataclass(frozen=True)
class KindProfile:
    """Per-kind parameters for the shared generation-store handler."""

    kind: JobKind
    label: str
    refund_tag: str
    category: Optional[str]
    media_type: Optional[str]


def _profile(kind: JobKind, label: str, media_type: Optional[str]) -> KindProfile:
    category = category_for_kind(kind) if media_type else None
    return KindProfile(kind=kind, label=label, refund_tag=kind.value, category=category, media_type=media_type)


KIND_PROFILES = {
    JobKind.GENERATION: _profile(JobKind.GENERATION, "Generation", MEDIA_IMAGE),
    JobKind.UPSCALE: _profile(JobKind.UPSCALE, "Upscale", MEDIA_IMAGE),
    JobKind.EDIT: _profile(JobKind.EDIT, "Edit", MEDIA_IMAGE),
    JobKind.VIDEO: _profile(JobKind.VIDEO, "Video generation", MEDIA_VIDEO),
    JobKind.TRAINING: _profile(JobKind.TRAINING, "Training", None),
}

# Domain status -> provider vocabulary used in realtime events
PUBLISHED_STATUS = {
    GenerationStatus.PENDING: ProviderStatus.STARTING.value,
    GenerationStatus.PROCESSING: ProviderStatus.PROCESSING.value,
    GenerationStatus.COMPLETED: ProviderStatus.SUCCEEDED.value,
    GenerationStatus.FAILED: ProviderStatus.FAILED.value,
    GenerationStatus.CANCELLED: ProviderStatus.CANCELED.value,
}

TRAINING_PROGRESS = {
    ProviderStatus.STARTING: 5,
    ProviderStatus.PROCESSING: 50,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_training_quality_score(
    payload: ProviderWebhookPayload,
    architecture_markers: Sequence[str] = ("lora", "flux"),
) -> int:
    """
    Heuristic 20-100 quality score for a finished training run.

    Starts at 80, rewards success and fast runs, penalises error lines in
    the logs and rewards logs mentioning a known architecture.
    """
    score = 80

    if payload.status == ProviderStatus.SUCCEEDED:
        score += 15

    if payload.total_time:
        minutes = payload.total_time / 60
        if minutes < 15:
            score += 10
        elif minutes < 30:
            score += 5
        elif minutes > 60:
            score -= 5

    lines = [line.lower() for line in payload.logs]
    if any("error" in line for line in lines):
        score -= 5

    markers = [m.lower() for m in architecture_markers if m]
    if any(marker in line for line in lines for marker in markers):
        score += 5

    return max(20, min(100, score))


@dataclass
class Transition:
    """Column values to write and whether the job must be refunded."""

    values: dict[str, Any]
    refund: bool = False
    terminal: bool = False


@dataclass
class ReconcileOutcome:
    """What a callback did to local state."""

    found: bool
    external_job_id: str
    job_type: Optional[str] = None
    job_id: Optional[str] = None
    owner_id: Optional[str] = None
    status: Optional[str] = None
    updated: bool = False
    refunded: bool = False
    result_urls: list[str] = field(default_factory=list)
    message: Optional[str] = None


class WebhookReconciler:
    """
    State machine driving jobs from provider callbacks.

    Every write is a single conditional UPDATE guarded by ``completed_at IS
    NULL``, so terminal states absorb late or duplicate deliveries. Refunds
    and realtime publishes are best-effort: their failures are logged and
    never change the outcome.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        media: MediaPersister,
        ledger: CreditLedger,
        publisher: RealtimePublisher,
        classifier: Optional[JobClassifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.media = media
        self.ledger = ledger
        self.publisher = publisher
        self.classifier = classifier or JobClassifier()
        self.settings = settings or get_settings()

    async def handle(
        self, payload: ProviderWebhookPayload, hint: Optional[JobHint] = None
    ) -> ReconcileOutcome:
        """
        Apply one callback.

        Args:
            payload: Normalised provider payload
            hint: Routing hint from the callback URL

        Returns:
            ReconcileOutcome; ``found`` is False for jobs this service does not own
        """
        async with self.session_factory() as db:
            job = await self.classifier.classify(db, payload.id, hint)

        if job is None:
            return ReconcileOutcome(
                found=False,
                external_job_id=payload.id,
                message="Job not found - might be external job",
            )

        logger.info(
            f"Webhook {payload.status.value} for {job.kind.value} job={job.record.id} "
            f"owner={job.record.user_id} provider_job={payload.id}"
        )

        if job.is_training:
            return await self._handle_training(job, payload)
        return await self._handle_generation(job, payload)

    # ============== Generation-store kinds ==============

    async def _handle_generation(self, job: ClassifiedJob, payload: ProviderWebhookPayload) -> ReconcileOutcome:
        record: Generation = job.record
        profile = KIND_PROFILES[job.kind]
        outcome = ReconcileOutcome(
            found=True,
            external_job_id=payload.id,
            job_type=job.kind.value,
            job_id=record.id,
            owner_id=record.user_id,
        )

        if payload.status == ProviderStatus.SUCCEEDED and record.completed_at is not None:
            outcome.status = record.status.value
            outcome.message = "Job already finalized"
            logger.info(f"Ignoring late succeeded callback job={record.id} status={record.status.value}")
            return outcome

        transition = await self._generation_transition(record, profile, payload)
        guards = []
        if not transition.terminal:
            guards.append(Generation.status != GenerationStatus.PROCESSING)

        new_status: GenerationStatus = transition.values["status"]
        outcome.status = new_status.value
        outcome.updated = await self._apply(Generation, record.id, transition.values, *guards)
        if not outcome.updated:
            outcome.message = "Stale or duplicate callback"
            logger.info(f"No-op transition to {new_status.value} job={record.id} (stale or duplicate)")
            return outcome

        outcome.result_urls = transition.values.get("result_urls", [])

        if transition.refund:
            outcome.refunded = await self._refund(
                job, profile.refund_tag, record.credits_charged
            )

        await self._publish(
            record.user_id,
            EVENT_GENERATION_STATUS_CHANGED,
            {
                "generationId": record.id,
                "jobType": job.kind.value,
                "status": PUBLISHED_STATUS[new_status],
                "resultUrls": transition.values.get("result_urls"),
                "thumbnailUrls": transition.values.get("thumbnail_urls"),
                "errorMessage": transition.values.get("error_message"),
                "processingTime": transition.values.get("processing_time_ms"),
            },
            job_id=record.id,
        )
        return outcome

    async def _generation_transition(
        self, record: Generation, profile: KindProfile, payload: ProviderWebhookPayload
    ) -> Transition:
        status = payload.status

        if status in (ProviderStatus.STARTING, ProviderStatus.PROCESSING):
            return Transition(values={"status": GenerationStatus.PROCESSING})

        values: dict[str, Any] = {"completed_at": _utcnow()}
        if payload.total_time:
            values["processing_time_ms"] = round(payload.total_time * 1000)

        if status == ProviderStatus.FAILED:
            values.update(
                status=GenerationStatus.FAILED,
                error_message=payload.error or f"{profile.label} failed",
            )
            return Transition(values=values, refund=True, terminal=True)

        if status == ProviderStatus.CANCELED:
            values.update(
                status=GenerationStatus.CANCELLED,
                error_message=f"{profile.label} was cancelled",
            )
            return Transition(values=values, refund=True, terminal=True)

        # succeeded
        if not payload.output_urls:
            values.update(status=GenerationStatus.FAILED, error_message=NO_OUTPUT_MESSAGE)
            return Transition(values=values, refund=True, terminal=True)

        stored = await self.media.persist(
            payload.output_urls, record.id, record.user_id, profile.category
        )
        if not stored.success:
            logger.error(
                f"Media persist failed job={record.id} owner={record.user_id} stage=media: {stored.error}"
            )
            values.update(status=GenerationStatus.FAILED, error_message=STORAGE_FAILED_MESSAGE)
            return Transition(values=values, refund=True, terminal=True)

        values.update(
            status=GenerationStatus.COMPLETED,
            result_urls=stored.permanent_urls,
            thumbnail_urls=stored.thumbnail_urls,
            storage_category=profile.category,
            error_message=None,
            details={
                **(record.details or {}),
                "storage": {
                    "category": profile.category,
                    "mediaType": profile.media_type,
                    "keys": stored.keys,
                    "droppedItems": [f.index for f in stored.failures],
                },
                "providerJobId": payload.id,
                "webhook": True,
            },
        )
        return Transition(values=values, terminal=True)

    # ============== Training ==============

    async def _handle_training(self, job: ClassifiedJob, payload: ProviderWebhookPayload) -> ReconcileOutcome:
        record: TrainingModel = job.record
        profile = KIND_PROFILES[JobKind.TRAINING]
        outcome = ReconcileOutcome(
            found=True,
            external_job_id=payload.id,
            job_type=JobKind.TRAINING.value,
            job_id=record.id,
            owner_id=record.user_id,
        )

        transition = self._training_transition(record, profile, payload)
        guards = []
        progress = transition.values.get("progress")
        if not transition.terminal:
            guards.append(TrainingModel.progress < progress)

        new_status: TrainingStatus = transition.values["status"]
        outcome.status = new_status.value
        outcome.updated = await self._apply(TrainingModel, record.id, transition.values, *guards)
        if not outcome.updated:
            outcome.message = "Stale or duplicate callback"
            logger.info(f"No-op training transition to {new_status.value} job={record.id} (stale or duplicate)")
            return outcome

        if transition.refund:
            outcome.refunded = await self._refund(
                job, profile.refund_tag, record.credits_charged
            )

        await self._publish(
            record.user_id,
            EVENT_MODEL_STATUS_CHANGED,
            {
                "modelId": record.id,
                "status": new_status.value,
                "progress": progress,
                "qualityScore": transition.values.get("quality_score"),
                "modelUrl": transition.values.get("model_url"),
                "errorMessage": transition.values.get("error_message"),
            },
            job_id=record.id,
        )
        return outcome

    def _training_transition(
        self, record: TrainingModel, profile: KindProfile, payload: ProviderWebhookPayload
    ) -> Transition:
        status = payload.status

        if status in TRAINING_PROGRESS:
            return Transition(
                values={"status": TrainingStatus.TRAINING, "progress": TRAINING_PROGRESS[status]}
            )

        now = _utcnow()
        values: dict[str, Any] = {"completed_at": now}
        if payload.total_time:
            values["processing_time_ms"] = round(payload.total_time * 1000)

        if status == ProviderStatus.SUCCEEDED:
            values.update(
                status=TrainingStatus.READY,
                progress=100,
                trained_at=now,
                model_url=payload.model_url,
                error_message=None,
                quality_score=calculate_training_quality_score(
                    payload, self.settings.training_architecture_markers
                ),
                training_config={
                    **(record.training_config if isinstance(record.training_config, dict) else {}),
                    "trainingCompleted": True,
                    "completedAt": now.isoformat(),
                    "version": payload.version,
                    "webhook": True,
                },
            )
            return Transition(values=values, terminal=True)

        if status == ProviderStatus.FAILED:
            values.update(
                status=TrainingStatus.ERROR,
                progress=0,
                trained_at=now,
                error_message=payload.error or f"{profile.label} failed",
            )
            return Transition(values=values, refund=True, terminal=True)

        # canceled: back to DRAFT, but terminal for this provider job
        values.update(status=TrainingStatus.DRAFT, error_message=f"{profile.label} was cancelled")
        return Transition(values=values, refund=True, terminal=True)

    # ============== Shared steps ==============

    async def _apply(self, model, record_id: str, values: dict[str, Any], *guards) -> bool:
        """Conditionally update one record. Returns False when the guards rejected it."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(model)
                .where(model.id == record_id, model.completed_at.is_(None), *guards)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount > 0

    async def _refund(self, job: ClassifiedJob, reason_tag: str, credits_charged: int) -> bool:
        record = job.record
        try:
            result = await self.ledger.refund(
                record.id,
                record.user_id,
                reason_tag,
                job_kind=job.kind,
                amount=credits_charged or None,
            )
        except Exception:
            logger.exception(f"Credit refund failed job={record.id} owner={record.user_id} stage=refund")
            return False
        return result.refunded

    async def _publish(self, owner_id: str, event_type: str, payload: dict[str, Any], job_id: str):
        try:
            await self.publisher.publish(owner_id, event_type, payload)
        except Exception:
            logger.exception(f"Realtime publish failed job={job_id} owner={owner_id} stage=publish")


def build_reconciler(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> WebhookReconciler:
    """Wire the reconciler with its production collaborators."""
    settings = settings or get_settings()
    if session_factory is None:
        from reconciler.db.session import async_session_maker

        session_factory = async_session_maker

    storage = get_storage_service(settings)
    return WebhookReconciler(
        session_factory=session_factory,
        media=MediaPersister(storage, settings),
        ledger=CreditLedger(session_factory),
        publisher=RealtimePublisher(settings.redis_url, settings.realtime_channel_prefix),
        settings=settings,
    )
