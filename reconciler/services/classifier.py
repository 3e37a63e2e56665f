"""Resolve a provider job id to the local record that owns it."""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.db.models import GENERATION_KINDS, Generation, JobKind, TrainingModel

logger = logging.getLogger(__name__)

JobRecord = Union[Generation, TrainingModel]


@dataclass
class JobHint:
    """Routing hint passed by the job creator in the callback URL."""

    kind: Optional[str] = None
    record_id: Optional[str] = None
    owner_id: Optional[str] = None

    @property
    def usable(self) -> bool:
        return bool(self.kind and self.record_id)


@dataclass
class ClassifiedJob:
    """A job record and the kind it was resolved as."""

    kind: JobKind
    record: JobRecord

    @property
    def is_training(self) -> bool:
        return self.kind == JobKind.TRAINING


def _parse_kind(value: Optional[str]) -> Optional[JobKind]:
    if not value:
        return None
    try:
        return JobKind(value.strip().lower())
    except ValueError:
        return None


class JobClassifier:
    """
    Classify a webhook by locating its job record.

    Hints from the callback URL are tried first. When they are missing,
    unknown, miss, or point at a record bound to a different provider job,
    the provider job id is looked up in the generations table and then the
    model training table. Lookups are read-only.
    """

    async def classify(
        self,
        db: AsyncSession,
        external_job_id: str,
        hint: Optional[JobHint] = None,
    ) -> Optional[ClassifiedJob]:
        """
        Find the record for a provider job.

        Args:
            db: Database session
            external_job_id: Provider job id from the webhook payload
            hint: Optional routing hint from query parameters

        Returns:
            ClassifiedJob, or None if no local record matches
        """
        if hint is not None and hint.usable:
            found = await self._from_hint(db, external_job_id, hint)
            if found is not None:
                return found

        return await self._auto_detect(db, external_job_id)

    async def _from_hint(
        self, db: AsyncSession, external_job_id: str, hint: JobHint
    ) -> Optional[ClassifiedJob]:
        kind = _parse_kind(hint.kind)
        if kind is None:
            logger.warning(f"Unknown job type hint '{hint.kind}' job={external_job_id}, auto-detecting")
            return None

        model = TrainingModel if kind == JobKind.TRAINING else Generation
        query = select(model).where(model.id == hint.record_id)
        if hint.owner_id:
            query = query.where(model.user_id == hint.owner_id)

        record = (await db.execute(query)).scalar_one_or_none()
        if record is None:
            logger.warning(
                f"Hinted {kind.value} record {hint.record_id} not found job={external_job_id}, auto-detecting"
            )
            return None

        if record.external_job_id and record.external_job_id != external_job_id:
            logger.warning(
                f"Hinted record {record.id} belongs to provider job {record.external_job_id}, "
                f"not {external_job_id}; auto-detecting"
            )
            return None

        if isinstance(record, Generation):
            # The stored kind is authoritative over the hint's generation sub-kind
            kind = record.kind if record.kind in GENERATION_KINDS else JobKind.GENERATION

        return ClassifiedJob(kind=kind, record=record)

    async def _auto_detect(self, db: AsyncSession, external_job_id: str) -> Optional[ClassifiedJob]:
        result = await db.execute(
            select(Generation)
            .where(Generation.external_job_id == external_job_id)
            .order_by(Generation.created_at.desc())
            .limit(1)
        )
        generation = result.scalar_one_or_none()
        if generation is not None:
            kind = generation.kind if generation.kind in GENERATION_KINDS else JobKind.GENERATION
            return ClassifiedJob(kind=kind, record=generation)

        result = await db.execute(
            select(TrainingModel)
            .where(TrainingModel.external_job_id == external_job_id)
            .order_by(TrainingModel.created_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        if model is not None:
            return ClassifiedJob(kind=JobKind.TRAINING, record=model)

        logger.info(f"No local record for provider job {external_job_id}")
        return None
