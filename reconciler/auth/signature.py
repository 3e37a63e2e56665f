"""Webhook signature verification (Standard Webhooks scheme)."""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

HDR_ID = "webhook-id"
HDR_TIMESTAMP = "webhook-timestamp"
HDR_SIGNATURE = "webhook-signature"
SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"


def _secret_bytes(secret: str) -> bytes:
    """Signing key: base64 payload of a ``whsec_`` secret, raw UTF-8 otherwise."""
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX) :])
    return secret.encode("utf-8")


def sign_payload(secret: str, webhook_id: str, timestamp: int | str, body: bytes) -> str:
    """
    Signature = base64(HMAC_SHA256(key, f"{id}.{timestamp}.{body}"))

    Returns the header-ready value ``v1,<signature>``.
    """
    to_sign = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), to_sign, hashlib.sha256).digest()
    return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('ascii')}"


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """
    Check a callback against the shared secret.

    Args:
        body: Raw request body, exactly as received
        headers: Request headers (case-insensitive mapping)
        secret: Shared signing secret
        tolerance_seconds: Maximum clock skew between signing and receipt
        now: Current unix time, for tests

    Returns:
        True if any ``v1`` signature in the header matches and the
        timestamp is within tolerance
    """
    webhook_id = headers.get(HDR_ID)
    timestamp = headers.get(HDR_TIMESTAMP)
    signature_header = headers.get(HDR_SIGNATURE)
    if not (webhook_id and timestamp and signature_header):
        logger.warning("Webhook signature headers missing")
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        logger.warning(f"Webhook timestamp is not an integer: {timestamp!r}")
        return False

    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance_seconds:
        logger.warning(f"Webhook timestamp outside tolerance: id={webhook_id} ts={sent_at}")
        return False

    try:
        expected = sign_payload(secret, webhook_id, timestamp, body).split(",", 1)[1]
    except (binascii.Error, ValueError):
        logger.error("Configured webhook secret is not valid base64")
        return False

    for candidate in signature_header.split():
        version, _, signature = candidate.partition(",")
        if version == SIGNATURE_VERSION and hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            return True

    logger.warning(f"Webhook signature mismatch: id={webhook_id}")
    return False
