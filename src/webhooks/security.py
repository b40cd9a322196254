"""Webhook security utilities.

Provides HMAC signature generation and verification for webhook payloads
to ensure authenticity and prevent tampering, plus the random ID source
used for webhook IDs. Both sit behind small interfaces so tests can swap
in deterministic fakes.

Receivers verify a delivery by recomputing HMAC-SHA256 over the raw
request body with their shared secret and comparing it to the
``X-Lovable-Signature`` header (``sha256=<hex>``).
"""

import hashlib
import hmac
import json
import secrets
import uuid
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Lovable-Signature"
WEBHOOK_ID_HEADER = "X-Webhook-ID"
EVENT_TYPE_HEADER = "X-Event-Type"
SIGNATURE_SCHEME = "sha256"


class HmacSigner(Protocol):
    """Computes a hex MAC over the exact bytes that will be sent."""

    def sign(self, secret: str, body: bytes) -> str: ...


class SecureRandom(Protocol):
    """Source of unguessable identifiers and tokens."""

    def uuid(self) -> str: ...

    def token(self, nbytes: int) -> str: ...


class Sha256Signer:
    """HMAC-SHA256 signer."""

    def sign(self, secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class SystemRandom:
    """SecureRandom backed by the OS CSPRNG."""

    def uuid(self) -> str:
        return str(uuid.uuid4())

    def token(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)


def canonical_json(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the bytes that are signed and sent.

    Field order follows the mapping's insertion order, so a payload
    built the same way always serializes to the same bytes.

    Args:
        payload: JSON-serializable mapping.

    Returns:
        Compact UTF-8 encoded JSON.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def generate_signature(
    body: bytes | str,
    secret: str,
    *,
    signer: HmacSigner | None = None,
) -> str:
    """Generate HMAC-SHA256 signature for a webhook body.

    Args:
        body: Serialized payload (the exact request body).
        secret: Subscription secret key.
        signer: Optional signer (defaults to HMAC-SHA256).

    Returns:
        Hex-encoded signature.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")

    signature = (signer or Sha256Signer()).sign(secret, body)

    logger.debug("webhook_signature_generated", payload_length=len(body))

    return signature


def format_signature_header(signature: str) -> str:
    return f"{SIGNATURE_SCHEME}={signature}"


def verify_signature(
    body: bytes | str,
    signature_header: str,
    secret: str,
) -> bool:
    """Verify the signature header of a received webhook.

    Args:
        body: Raw received request body.
        signature_header: Value of the ``X-Lovable-Signature`` header.
        secret: Shared secret key.

    Returns:
        True if the signature matches, False otherwise.
    """
    scheme, _, claimed = signature_header.partition("=")
    if scheme != SIGNATURE_SCHEME or not claimed:
        logger.warning("webhook_signature_malformed")
        return False

    expected = generate_signature(body, secret)

    # Constant-time comparison
    is_valid = hmac.compare_digest(claimed, expected)

    if not is_valid:
        logger.warning("webhook_signature_invalid")

    return is_valid


def create_signature_headers(
    body: bytes,
    secret: str,
    *,
    webhook_id: str,
    event_type: str,
    signer: HmacSigner | None = None,
) -> dict[str, str]:
    """Create HTTP headers for a webhook delivery.

    Args:
        body: Serialized envelope being sent.
        secret: Subscription secret key.
        webhook_id: Per-delivery identifier.
        event_type: Event type being delivered.
        signer: Optional signer.

    Returns:
        Dictionary of headers to include in request.
    """
    signature = generate_signature(body, secret, signer=signer)

    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: format_signature_header(signature),
        WEBHOOK_ID_HEADER: webhook_id,
        EVENT_TYPE_HEADER: event_type,
    }
