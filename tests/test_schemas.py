"""Tests for provider payload normalisation."""

import pytest
from pydantic import ValidationError

from reconciler.schemas.schemas import ProviderStatus, ProviderWebhookPayload, extract_output_urls


@pytest.mark.parametrize(
    "output,expected",
    [
        ("https://x/a.png", ["https://x/a.png"]),
        (["https://x/a.png", "https://x/b.png"], ["https://x/a.png", "https://x/b.png"]),
        ({"images": ["https://x/a.png"]}, ["https://x/a.png"]),
        ({"url": "https://x/a.mp4"}, ["https://x/a.mp4"]),
        (["https://x/a.png", None, 3, ""], ["https://x/a.png"]),
        ({"weights": "https://x/w.tar"}, []),
        (None, []),
        ("", []),
    ],
)
def test_extract_output_urls(output, expected):
    assert extract_output_urls(output) == expected


def test_payload_normalises_output_once():
    payload = ProviderWebhookPayload.model_validate(
        {"id": "pred-1", "status": "succeeded", "output": {"images": ["https://x/a.png"]}}
    )
    assert payload.status == ProviderStatus.SUCCEEDED
    assert payload.output_urls == ["https://x/a.png"]


def test_training_model_url_from_weights():
    payload = ProviderWebhookPayload.model_validate(
        {
            "id": "train-1",
            "status": "succeeded",
            "output": {"version": "owner/model:abc", "weights": "https://x/weights.tar"},
        }
    )
    assert payload.model_url == "https://x/weights.tar"


def test_training_model_url_from_version_or_url():
    by_version = ProviderWebhookPayload.model_validate(
        {"id": "t", "status": "succeeded", "output": {"version": "owner/model:abc"}}
    )
    assert by_version.model_url == "owner/model:abc"

    by_url = ProviderWebhookPayload.model_validate(
        {"id": "t", "status": "succeeded", "output": "https://x/weights.safetensors"}
    )
    assert by_url.model_url == "https://x/weights.safetensors"


def test_cancelled_spelling_is_accepted():
    payload = ProviderWebhookPayload.model_validate({"id": "p", "status": "Cancelled"})
    assert payload.status == ProviderStatus.CANCELED


def test_logs_string_is_split_into_lines():
    payload = ProviderWebhookPayload.model_validate(
        {"id": "p", "status": "processing", "logs": "step 1\nloading flux\nstep 2"}
    )
    assert payload.logs == ["step 1", "loading flux", "step 2"]


def test_metrics_total_time():
    payload = ProviderWebhookPayload.model_validate(
        {"id": "p", "status": "succeeded", "metrics": {"predict_time": 4.2, "total_time": 5.5}}
    )
    assert payload.total_time == 5.5

    assert ProviderWebhookPayload.model_validate({"id": "p", "status": "starting"}).total_time is None


def test_unknown_fields_are_kept():
    payload = ProviderWebhookPayload.model_validate(
        {"id": "p", "status": "starting", "urls": {"get": "https://api/x"}}
    )
    assert payload.model_extra["urls"] == {"get": "https://api/x"}


@pytest.mark.parametrize(
    "body",
    [
        {"status": "succeeded"},
        {"id": "", "status": "succeeded"},
        {"id": "p", "status": "exploded"},
        {"id": "p"},
    ],
)
def test_invalid_payloads(body):
    with pytest.raises(ValidationError):
        ProviderWebhookPayload.model_validate(body)


def test_non_string_error_is_stringified():
    payload = ProviderWebhookPayload.model_validate({"id": "p", "status": "failed", "error": {"code": 137}})
    assert payload.error == "{'code': 137}"
