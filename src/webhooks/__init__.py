"""Webhook notification system for external subscribers.

This module provides:
- WebhookEventType: Enumeration of all webhook event types
- WebhookEnvelope: Signed payload structure for webhook deliveries
- WebhookDispatcher: Event fan-out with retry logic and delivery records
- HMAC signature generation and verification
"""

from src.webhooks.dispatcher import DeliveryReport, DispatchSummary, WebhookDispatcher
from src.webhooks.events import (
    WebhookEnvelope,
    WebhookEvent,
    WebhookEventType,
    build_envelope,
    build_task_created_event,
)
from src.webhooks.security import (
    HmacSigner,
    SecureRandom,
    Sha256Signer,
    SystemRandom,
    canonical_json,
    generate_signature,
    verify_signature,
)

__all__ = [
    # Events
    "WebhookEventType",
    "WebhookEvent",
    "WebhookEnvelope",
    "build_envelope",
    "build_task_created_event",
    # Dispatcher
    "DeliveryReport",
    "DispatchSummary",
    "WebhookDispatcher",
    # Security
    "HmacSigner",
    "SecureRandom",
    "Sha256Signer",
    "SystemRandom",
    "canonical_json",
    "generate_signature",
    "verify_signature",
]
