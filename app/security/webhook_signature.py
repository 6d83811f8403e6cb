"""
HMAC-SHA256 verification of GitHub webhook deliveries.

GitHub signs the exact bytes it sends, so verification must run on the raw
request body before anything parses or re-serializes it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from app.errors import AppError, ErrorKind, configuration_error

SIGNATURE_PREFIX = "sha256="

__all__ = [
    "SIGNATURE_PREFIX",
    "compute_signature",
    "signatures_match",
    "verify_signature",
    "verify_and_parse",
]


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` header value GitHub would send for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def signatures_match(expected: str, supplied: str) -> bool:
    """
    Compare two signatures in constant time.

    ``hmac.compare_digest`` walks the whole input regardless of where the
    first mismatch is, and returns False for unequal lengths without raising.
    """
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def verify_signature(body: Any, signature: str | None, secret: str | None) -> None:
    """
    Verify ``signature`` against ``body`` or raise an ``AppError``.

    Args:
        body: Raw request bytes exactly as received.
        signature: Value of the X-Hub-Signature-256 header.
        secret: Configured webhook secret.

    Raises:
        AppError(CONFIGURATION): no secret configured
        AppError(MISSING_SIGNATURE): header absent or empty
        AppError(MALFORMED_PAYLOAD): body is not raw bytes (already parsed upstream)
        AppError(INVALID_SIGNATURE): digest mismatch
    """
    if not secret:
        raise configuration_error("GITHUB_WEBHOOK_SECRET")

    if not signature:
        raise AppError(ErrorKind.MISSING_SIGNATURE, "Missing webhook signature")

    if not isinstance(body, bytes | bytearray):
        raise AppError(
            ErrorKind.MALFORMED_PAYLOAD,
            "Invalid request body format: raw bytes required for signature verification",
            {"body_type": type(body).__name__},
        )

    expected = compute_signature(bytes(body), secret)
    if not signatures_match(expected, signature):
        raise AppError(ErrorKind.INVALID_SIGNATURE, "Invalid webhook signature")


def verify_and_parse(body: Any, signature: str | None, secret: str | None) -> dict[str, Any]:
    """Verify the delivery, then decode the JSON object it carries."""
    verify_signature(body, signature, secret)

    try:
        payload = json.loads(bytes(body).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AppError(ErrorKind.MALFORMED_PAYLOAD, "Invalid JSON payload") from e

    if not isinstance(payload, dict):
        raise AppError(ErrorKind.MALFORMED_PAYLOAD, "Webhook payload must be a JSON object")

    return payload
