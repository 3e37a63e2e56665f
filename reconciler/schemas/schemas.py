"""Pydantic schemas for webhook payloads and responses."""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ============== Provider Webhook ==============


class ProviderStatus(str, enum.Enum):
    """Prediction status reported by the inference provider."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


STATUS_ALIASES = {
    "cancelled": ProviderStatus.CANCELED.value,
}


def extract_output_urls(output: Any) -> list[str]:
    """
    Flatten the provider's ``output`` field into a list of URLs.

    Accepts a single URL, a list of URLs, ``{"images": [...]}`` or
    ``{"url": ...}``. Anything else yields an empty list.
    """
    if output is None:
        return []
    if isinstance(output, str):
        return [output] if output.strip() else []
    if isinstance(output, list):
        return [item for item in output if isinstance(item, str) and item.strip()]
    if isinstance(output, dict):
        if "images" in output:
            return extract_output_urls(output["images"])
        if isinstance(output.get("url"), str):
            return extract_output_urls(output["url"])
    return []


def extract_model_url(output: Any) -> Optional[str]:
    """Trained weights location from a training ``output``."""
    if isinstance(output, dict):
        for field in ("weights", "version"):
            value = output.get(field)
            if isinstance(value, str) and value:
                return value
    urls = extract_output_urls(output)
    return urls[0] if urls else None


class ProviderMetrics(BaseModel):
    """Timing metrics attached to a prediction (seconds)."""

    model_config = ConfigDict(extra="allow")

    predict_time: Optional[float] = None
    total_time: Optional[float] = None


class ProviderWebhookPayload(BaseModel):
    """
    Prediction callback from the inference provider.

    ``output`` is kept as received for auditing; handlers consume the
    normalised ``output_urls`` and ``model_url``.
    """

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    id: str = Field(..., min_length=1, description="Provider job id")
    status: ProviderStatus
    output: Any = None
    error: Optional[str] = None
    logs: list[str] = Field(default_factory=list)
    metrics: Optional[ProviderMetrics] = None
    version: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    output_urls: list[str] = Field(default_factory=list)
    model_url: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return STATUS_ALIASES.get(v, v)
        return v

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, v):
        if v is None or isinstance(v, str):
            return v or None
        return str(v)

    @field_validator("logs", mode="before")
    @classmethod
    def split_logs(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return v.splitlines()
        return v

    @model_validator(mode="after")
    def normalize_output(self):
        self.output_urls = extract_output_urls(self.output)
        self.model_url = extract_model_url(self.output)
        return self

    @property
    def total_time(self) -> Optional[float]:
        return self.metrics.total_time if self.metrics else None


# ============== Responses ==============


class CamelModel(BaseModel):
    """Response model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookResult(CamelModel):
    """Outcome of applying a callback to one job."""

    type: str
    job_id: str
    status: Optional[str] = None
    updated: bool
    refunded: bool = False
    result_urls: list[str] = Field(default_factory=list)
    message: Optional[str] = None


class WebhookMetadata(CamelModel):
    """Diagnostics returned to the provider with every processed callback."""

    external_job_id: str
    provider_status: str
    hinted: bool = False
    payload_size: int = 0
    provider_total_time: Optional[float] = None


class WebhookErrorResponse(CamelModel):
    """Error body for rejected or failed callbacks."""

    success: bool = False
    error: str
    timestamp: datetime
    processing_time: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    storage: str
