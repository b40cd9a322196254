"""Webhook event dispatcher with retry logic.

Handles sending signed webhook envelopes to a user's subscribed
endpoints with exponential backoff retry, and records one delivery row
per subscription per dispatch.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import Settings
from src.errors import DeliveryError, StoreError
from src.storage.models import WebhookDelivery, WebhookSubscription
from src.storage.store import PlannerStore
from src.webhooks.events import WebhookEvent, WebhookEventType, build_envelope
from src.webhooks.security import (
    HmacSigner,
    SecureRandom,
    Sha256Signer,
    SystemRandom,
    canonical_json,
    create_signature_headers,
)

logger = structlog.get_logger(__name__)

DEADLINE_EXCEEDED_BODY = "Delivery deadline exceeded"

Sleep = Callable[[float], Awaitable[None]]


class DeliveryReport(BaseModel):
    """Outcome of delivering one event to one subscription."""

    subscription_id: str
    subscription_name: str
    success: bool
    status: int


class DispatchSummary(BaseModel):
    """Aggregate result returned to whoever triggered the event."""

    message: str
    delivered: int
    total: int
    results: list[DeliveryReport]

    @classmethod
    def from_reports(cls, reports: list[DeliveryReport]) -> "DispatchSummary":
        if not reports:
            return cls(message="No subscriptions found", delivered=0, total=0, results=[])
        return cls(
            message="Webhooks processed",
            delivered=sum(1 for r in reports if r.success),
            total=len(reports),
            results=reports,
        )


@dataclass
class _AttemptLog:
    """Mutable record of a delivery sequence, readable after a timeout."""

    attempts: int = 0
    status: int = 0
    body: str = ""
    success: bool = False
    last_attempt_at: datetime | None = None


class WebhookDispatcher:
    """Dispatches webhook events to a user's subscribed endpoints.

    Features:
    - Concurrent fan-out, one independent retry loop per subscription
    - Exponential backoff retry (2s, 4s, ...) bounded by an overall deadline
    - HMAC-SHA256 signature over the exact bytes sent
    - Delivery audit trail with the outcome of the last attempt
    """

    def __init__(
        self,
        store: PlannerStore,
        settings: Settings | None = None,
        *,
        signer: HmacSigner | None = None,
        random: SecureRandom | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Store holding subscriptions and deliveries.
            settings: Retry, timeout and deadline configuration.
            signer: HMAC signer (defaults to HMAC-SHA256).
            random: Webhook ID source (defaults to the OS CSPRNG).
            sleep: Coroutine used for backoff delays.
        """
        settings = settings or Settings()
        self._store = store
        self._signer = signer or Sha256Signer()
        self._random = random or SystemRandom()
        self._sleep = sleep
        self._max_attempts = settings.WEBHOOK_MAX_ATTEMPTS
        self._backoff_multiplier = settings.WEBHOOK_BACKOFF_MULTIPLIER_SECONDS
        self._attempt_timeout = settings.WEBHOOK_ATTEMPT_TIMEOUT_SECONDS
        self._deadline = settings.WEBHOOK_DISPATCH_DEADLINE_SECONDS
        self._body_limit = settings.WEBHOOK_RESPONSE_BODY_LIMIT
        self._logger = logger.bind(component="webhook_dispatcher")

    async def dispatch(
        self,
        event_type: str | WebhookEventType,
        user_id: str,
        data: dict[str, Any],
    ) -> list[DeliveryReport]:
        """Dispatch an event to every matching active subscription.

        Args:
            event_type: Type of event.
            user_id: User whose subscriptions receive the event.
            data: Event data.

        Returns:
            One report per matching subscription (empty if none match).

        Raises:
            StoreError: If subscriptions could not be loaded.
        """
        event_name = event_type.value if isinstance(event_type, WebhookEventType) else event_type

        self._logger.info("dispatching_event", event_type=event_name, user_id=user_id)

        subscriptions = await self._store.get_active_subscriptions(user_id)
        matching = [s for s in subscriptions if s.should_receive_event(event_name)]

        if not matching:
            self._logger.debug(
                "no_webhooks_subscribed",
                event_type=event_name,
                user_id=user_id,
                active_subscriptions=len(subscriptions),
            )
            return []

        reports = await asyncio.gather(
            *(self._deliver(subscription, event_name, user_id, data) for subscription in matching)
        )

        self._logger.info(
            "event_dispatched",
            event_type=event_name,
            user_id=user_id,
            delivered=sum(1 for r in reports if r.success),
            total=len(reports),
        )

        return list(reports)

    async def dispatch_event(self, event: WebhookEvent) -> list[DeliveryReport]:
        """Convenience method to dispatch a prepared event."""
        return await self.dispatch(event.event_type, event.user_id, event.data)

    async def _deliver(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        user_id: str,
        data: dict[str, Any],
    ) -> DeliveryReport:
        """Sign, send with retries, and record one subscription's delivery."""
        envelope = build_envelope(event_type, user_id, data, webhook_id=self._random.uuid())
        payload = envelope.to_json_dict()
        body = canonical_json(payload)
        headers = create_signature_headers(
            body,
            subscription.secret_key,
            webhook_id=envelope.webhook_id,
            event_type=event_type,
            signer=self._signer,
        )

        log = _AttemptLog()
        try:
            await asyncio.wait_for(
                self._send_with_retry(subscription, body, headers, log),
                timeout=self._deadline,
            )
        except TimeoutError:
            if not log.success:
                log.body = DEADLINE_EXCEEDED_BODY
            self._logger.warning(
                "delivery_deadline_exceeded",
                subscription_id=subscription.id,
                attempts=log.attempts,
                deadline_seconds=self._deadline,
            )

        delivery = WebhookDelivery(
            subscription_id=subscription.id,
            event_type=event_type,
            payload=payload,
            response_status=log.status,
            response_body=log.body[: self._body_limit] if log.body else None,
            attempts=log.attempts,
            is_successful=log.success,
            last_attempt_at=log.last_attempt_at or datetime.now(UTC),
        )
        await self._record(delivery)

        return DeliveryReport(
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            success=log.success,
            status=log.status,
        )

    async def _send_with_retry(
        self,
        subscription: WebhookSubscription,
        body: bytes,
        headers: dict[str, str],
        log: _AttemptLog,
    ) -> None:
        """Deliver with retry logic.

        Attempt k (k >= 1) waits multiplier * 2^(k-1) seconds first; the
        first attempt is immediate. Stops on the first 2xx response.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_multiplier),
            retry=retry_if_exception_type(DeliveryError),
            sleep=self._sleep,
            reraise=True,
        )

        async with httpx.AsyncClient(timeout=self._attempt_timeout) as client:
            try:
                async for attempt in retrying:
                    with attempt:
                        await self._attempt_delivery(client, subscription, body, headers, log)
            except DeliveryError as e:
                self._logger.error(
                    "delivery_failed_permanently",
                    subscription_id=subscription.id,
                    attempts=log.attempts,
                    status_code=e.response_status,
                )

    async def _attempt_delivery(
        self,
        client: httpx.AsyncClient,
        subscription: WebhookSubscription,
        body: bytes,
        headers: dict[str, str],
        log: _AttemptLog,
    ) -> None:
        """Make a single delivery attempt.

        Raises:
            DeliveryError: On a network failure or non-2xx response.
        """
        log.attempts += 1
        log.last_attempt_at = datetime.now(UTC)

        self._logger.debug(
            "attempting_delivery",
            subscription_id=subscription.id,
            attempt=log.attempts,
        )

        try:
            response = await client.post(subscription.url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            log.status = 0
            log.body = str(e) or "Request timeout"
            self._logger.warning(
                "delivery_timeout",
                subscription_id=subscription.id,
                attempt=log.attempts,
            )
            raise DeliveryError(log.body) from e
        except Exception as e:
            log.status = 0
            log.body = str(e) or e.__class__.__name__
            self._logger.warning(
                "delivery_connection_error",
                subscription_id=subscription.id,
                attempt=log.attempts,
                error=log.body,
            )
            raise DeliveryError(log.body) from e

        log.status = response.status_code
        log.body = response.text or ""

        if 200 <= response.status_code < 300:
            log.success = True
            self._logger.info(
                "delivery_success",
                subscription_id=subscription.id,
                status_code=response.status_code,
                attempt=log.attempts,
            )
            return

        self._logger.warning(
            "delivery_non_success_response",
            subscription_id=subscription.id,
            status_code=response.status_code,
            attempt=log.attempts,
        )
        raise DeliveryError(
            f"HTTP {response.status_code}",
            response_status=response.status_code,
            response_body=log.body,
        )

    async def _record(self, delivery: WebhookDelivery) -> None:
        try:
            await self._store.record_delivery(delivery)
        except StoreError as e:
            self._logger.error(
                "delivery_record_failed",
                subscription_id=delivery.subscription_id,
                error=e.message,
            )
