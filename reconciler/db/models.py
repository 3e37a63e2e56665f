"""Database models for the generation-job reconciler."""

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.db.session import Base


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, enum.Enum):
    """Semantic kind of a provider job."""

    GENERATION = "generation"
    UPSCALE = "upscale"
    EDIT = "edit"
    VIDEO = "video"
    TRAINING = "training"


# Kinds stored in the generations table
GENERATION_KINDS = (JobKind.GENERATION, JobKind.UPSCALE, JobKind.EDIT, JobKind.VIDEO)


class GenerationStatus(str, enum.Enum):
    """Status of an image/upscale/edit/video job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TrainingStatus(str, enum.Enum):
    """Status of a model training job."""

    DRAFT = "DRAFT"
    TRAINING = "TRAINING"
    READY = "READY"
    ERROR = "ERROR"


class User(Base):
    """Account owning jobs and credits."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    credits_limit: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    generations: Mapped[list["Generation"]] = relationship("Generation", back_populates="user")
    models: Mapped[list["TrainingModel"]] = relationship("TrainingModel", back_populates="user")


class Generation(Base):
    """An image generation, upscale, edit or video job."""

    __tablename__ = "generations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    kind: Mapped[JobKind] = mapped_column(Enum(JobKind), default=JobKind.GENERATION)
    status: Mapped[GenerationStatus] = mapped_column(
        Enum(GenerationStatus), default=GenerationStatus.PENDING
    )
    external_job_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Results
    result_urls: Mapped[list] = mapped_column(JSON, default=list)
    thumbnail_urls: Mapped[list] = mapped_column(JSON, default=list)  # Index-aligned with result_urls
    storage_category: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Billing
    credits_charged: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metrics
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="generations")


class TrainingModel(Base):
    """A custom model training job."""

    __tablename__ = "ai_models"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(100))
    status: Mapped[TrainingStatus] = mapped_column(
        Enum(TrainingStatus), default=TrainingStatus.DRAFT
    )
    external_job_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    # Training outcome
    progress: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    quality_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    model_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    training_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Billing
    credits_charged: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    trained_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metrics
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="models")


class UsageLog(Base):
    """Append-only credit ledger: positive rows are debits, negative rows refunds."""

    __tablename__ = "usage_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    job_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    action: Mapped[str] = mapped_column(String(50), index=True)  # e.g. "generation", "generation_refund"
    credits_used: Mapped[int] = mapped_column(Integer)  # Signed delta
    reverses_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("usage_logs.id"), nullable=True, unique=True
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(150), nullable=True, unique=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # Sub-second resolution: refunds reverse the most recent debit
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
