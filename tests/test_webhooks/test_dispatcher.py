"""Tests for webhook dispatcher module."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from src.config import Settings
from src.errors import StoreError
from src.storage.models import WebhookSubscription
from src.storage.store import PlannerStore
from src.webhooks.dispatcher import (
    DEADLINE_EXCEEDED_BODY,
    DeliveryReport,
    DispatchSummary,
    WebhookDispatcher,
)
from src.webhooks.events import WebhookEvent, WebhookEventType
from src.webhooks.security import (
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    WEBHOOK_ID_HEADER,
    verify_signature,
)

# ============================================================================
# Fixtures
# ============================================================================


class FixedRandom:
    """Deterministic random source."""

    def __init__(self) -> None:
        self.count = 0

    def uuid(self) -> str:
        self.count += 1
        return f"wh-{self.count}"

    def token(self, nbytes: int) -> str:
        return "t" * nbytes


@pytest_asyncio.fixture
async def store(tmp_path):
    """Create an initialized store backed by a temporary database."""
    planner_store = PlannerStore(str(tmp_path / "planner.db"))
    await planner_store.initialize()
    yield planner_store
    await planner_store.close()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the dispatcher."""
    return []


@pytest.fixture
def dispatcher(store, sleeps):
    """Create test webhook dispatcher that records instead of sleeping."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return WebhookDispatcher(store, Settings(), random=FixedRandom(), sleep=fake_sleep)


@pytest_asyncio.fixture
async def subscription(store):
    """Create a wildcard subscription."""
    return await store.add_subscription(
        WebhookSubscription(
            user_id="user-1",
            name="Automation",
            url="https://example.com/webhook",
            secret_key="test-secret",
        )
    )


def make_response(status_code: int, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


# ============================================================================
# Summary Tests
# ============================================================================


class TestDispatchSummary:
    """Tests for the aggregate dispatch result."""

    def test_no_reports(self):
        """Test the empty summary."""
        summary = DispatchSummary.from_reports([])

        assert summary.message == "No subscriptions found"
        assert summary.delivered == 0
        assert summary.total == 0
        assert summary.results == []

    def test_counts(self):
        """Test that delivered counts only successes."""
        reports = [
            DeliveryReport(subscription_id="a", subscription_name="A", success=True, status=200),
            DeliveryReport(subscription_id="b", subscription_name="B", success=False, status=500),
        ]

        summary = DispatchSummary.from_reports(reports)

        assert summary.message == "Webhooks processed"
        assert summary.delivered == 1
        assert summary.total == 2


# ============================================================================
# Routing Tests
# ============================================================================


class TestRouting:
    """Tests for choosing which subscriptions receive an event."""

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, dispatcher, store):
        """Test that nothing is sent or recorded without subscriptions."""
        with patch("httpx.AsyncClient") as mock_client:
            reports = await dispatcher.dispatch("chapter.created", "user-1", {"id": "c1"})

        assert reports == []
        mock_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_wildcard_and_filtered(self, dispatcher, store):
        """Test that empty event_types receives everything and filters apply."""
        wildcard = await store.add_subscription(
            WebhookSubscription(user_id="user-1", url="https://a.example", secret_key="s1")
        )
        await store.add_subscription(
            WebhookSubscription(
                user_id="user-1",
                url="https://b.example",
                secret_key="s2",
                event_types=["lecture.completed"],
            )
        )

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=make_response(200)
            )
            reports = await dispatcher.dispatch(
                WebhookEventType.CHAPTER_CREATED, "user-1", {"id": "c1"}
            )

        assert [r.subscription_id for r in reports] == [wildcard.id]

    @pytest.mark.asyncio
    async def test_inactive_and_other_users_skipped(self, dispatcher, store):
        """Test that only the user's active subscriptions are used."""
        await store.add_subscription(
            WebhookSubscription(
                user_id="user-1", url="https://a.example", secret_key="s1", is_active=False
            )
        )
        await store.add_subscription(
            WebhookSubscription(user_id="user-2", url="https://b.example", secret_key="s2")
        )

        reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports == []

    @pytest.mark.asyncio
    async def test_dispatch_event(self, dispatcher, subscription):
        """Test dispatching a prepared event."""
        event = WebhookEvent(
            event_type=WebhookEventType.SCHEDULE_TASK_CREATED,
            user_id="user-1",
            data={"task_id": "t1"},
        )

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=make_response(200))
            mock_client.return_value.__aenter__.return_value.post = post
            reports = await dispatcher.dispatch_event(event)

        assert reports[0].success is True
        headers = post.call_args.kwargs["headers"]
        assert headers[EVENT_TYPE_HEADER] == "schedule_task.created"


# ============================================================================
# Delivery Tests
# ============================================================================


class TestDelivery:
    """Tests for signed delivery and recording."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, dispatcher, store, subscription, sleeps):
        """Test a first-attempt success."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=make_response(200, "ok"))
            mock_client.return_value.__aenter__.return_value.post = post

            reports = await dispatcher.dispatch("chapter.created", "user-1", {"id": "c1"})

        assert reports == [
            DeliveryReport(
                subscription_id=subscription.id,
                subscription_name="Automation",
                success=True,
                status=200,
            )
        ]
        assert post.await_count == 1
        assert sleeps == []

        deliveries = await store.list_deliveries(subscription.id)
        assert len(deliveries) == 1
        assert deliveries[0].is_successful is True
        assert deliveries[0].attempts == 1
        assert deliveries[0].response_status == 200
        assert deliveries[0].response_body == "ok"
        assert deliveries[0].last_attempt_at is not None

    @pytest.mark.asyncio
    async def test_signature_covers_sent_bytes(self, dispatcher, store, subscription):
        """Test that receivers can verify the exact body they get."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=make_response(200))
            mock_client.return_value.__aenter__.return_value.post = post

            await dispatcher.dispatch("question.created", "user-1", {"id": "q1"})

        url = post.call_args.args[0]
        body = post.call_args.kwargs["content"]
        headers = post.call_args.kwargs["headers"]

        assert url == "https://example.com/webhook"
        assert verify_signature(body, headers[SIGNATURE_HEADER], "test-secret") is True
        assert headers[WEBHOOK_ID_HEADER] == "wh-1"
        assert headers[EVENT_TYPE_HEADER] == "question.created"

        envelope = json.loads(body)
        assert list(envelope) == ["event_type", "user_id", "timestamp", "webhook_id", "data"]
        assert envelope["webhook_id"] == "wh-1"
        assert envelope["data"] == {"id": "q1"}
        assert envelope["timestamp"].endswith("Z")

        deliveries = await store.list_deliveries(subscription.id)
        assert deliveries[0].payload == envelope

    @pytest.mark.asyncio
    async def test_fresh_webhook_id_per_subscription(self, dispatcher, store):
        """Test that each delivery gets its own webhook id."""
        for url in ("https://a.example", "https://b.example"):
            await store.add_subscription(
                WebhookSubscription(user_id="user-1", url=url, secret_key="s")
            )

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=make_response(200))
            mock_client.return_value.__aenter__.return_value.post = post

            await dispatcher.dispatch("chapter.created", "user-1", {})

        webhook_ids = {call.kwargs["headers"][WEBHOOK_ID_HEADER] for call in post.call_args_list}
        assert webhook_ids == {"wh-1", "wh-2"}

    @pytest.mark.asyncio
    async def test_response_body_truncated(self, dispatcher, store, subscription):
        """Test that stored response bodies are capped."""
        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=make_response(200, "x" * 5000)
            )

            await dispatcher.dispatch("chapter.created", "user-1", {})

        deliveries = await store.list_deliveries(subscription.id)
        assert len(deliveries[0].response_body) == 1000

    @pytest.mark.asyncio
    async def test_record_failure_does_not_fail_dispatch(self, dispatcher, store, subscription):
        """Test that a failed audit write still returns the outcome."""
        with (
            patch("httpx.AsyncClient") as mock_client,
            patch.object(
                store,
                "record_delivery",
                AsyncMock(side_effect=StoreError("disk full", operation="record_delivery")),
            ),
        ):
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=make_response(200)
            )

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is True


# ============================================================================
# Retry Tests
# ============================================================================


class TestRetry:
    """Tests for retry and backoff."""

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, dispatcher, store, subscription, sleeps):
        """Test that a third-attempt success is recorded with its attempt count."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(
                side_effect=[
                    make_response(500, "boom"),
                    make_response(503, "busy"),
                    make_response(200, "ok"),
                ]
            )
            mock_client.return_value.__aenter__.return_value.post = post

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is True
        assert reports[0].status == 200
        assert post.await_count == 3
        assert sleeps == [2.0, 4.0]

        deliveries = await store.list_deliveries(subscription.id)
        assert len(deliveries) == 1
        assert deliveries[0].attempts == 3
        assert deliveries[0].is_successful is True

    @pytest.mark.asyncio
    async def test_permanent_failure(self, dispatcher, store, subscription, sleeps):
        """Test that attempts stop at the maximum and the last status is kept."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=make_response(500, "still broken"))
            mock_client.return_value.__aenter__.return_value.post = post

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is False
        assert reports[0].status == 500
        assert post.await_count == 3
        assert sleeps == [2.0, 4.0]

        deliveries = await store.list_deliveries(subscription.id)
        assert len(deliveries) == 1
        assert deliveries[0].attempts == 3
        assert deliveries[0].response_status == 500
        assert deliveries[0].response_body == "still broken"
        assert deliveries[0].is_successful is False

    @pytest.mark.asyncio
    async def test_4xx_is_retried(self, dispatcher, subscription):
        """Test that client errors are retried like any non-2xx."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(side_effect=[make_response(400), make_response(204)])
            mock_client.return_value.__aenter__.return_value.post = post

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is True
        assert reports[0].status == 204
        assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_network_error(self, dispatcher, store, subscription):
        """Test that network failures are recorded with status 0."""
        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.ConnectError("Connection refused")
            )

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is False
        assert reports[0].status == 0

        deliveries = await store.list_deliveries(subscription.id)
        assert deliveries[0].response_status == 0
        assert deliveries[0].response_body == "Connection refused"
        assert deliveries[0].attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_then_success(self, dispatcher, subscription):
        """Test that an attempt timeout is retried."""
        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(
                side_effect=[httpx.TimeoutException("Timeout"), make_response(200)]
            )
            mock_client.return_value.__aenter__.return_value.post = post

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is True
        assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_failures_are_independent(self, dispatcher, store):
        """Test that one failing endpoint does not affect another."""
        good = await store.add_subscription(
            WebhookSubscription(user_id="user-1", url="https://good.example", secret_key="s")
        )
        bad = await store.add_subscription(
            WebhookSubscription(user_id="user-1", url="https://bad.example", secret_key="s")
        )

        async def post(url, **kwargs):
            if url == "https://bad.example":
                return make_response(500)
            return make_response(200)

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=post)

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        by_id = {r.subscription_id: r for r in reports}
        assert by_id[good.id].success is True
        assert by_id[bad.id].success is False
        assert DispatchSummary.from_reports(reports).delivered == 1

    @pytest.mark.asyncio
    async def test_slow_endpoint_does_not_delay_others(self, dispatcher, store):
        """Test that subscriptions are delivered concurrently."""
        await store.add_subscription(
            WebhookSubscription(user_id="user-1", url="https://slow.example", secret_key="s")
        )
        fast = await store.add_subscription(
            WebhookSubscription(user_id="user-1", url="https://fast.example", secret_key="s")
        )
        release_slow = asyncio.Event()
        fast_done = asyncio.Event()
        completed = []

        async def post(url, **kwargs):
            if url == "https://slow.example":
                await release_slow.wait()
            completed.append(url)
            if url == "https://fast.example":
                fast_done.set()
            return make_response(200)

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=post)

            task = asyncio.create_task(dispatcher.dispatch("chapter.created", "user-1", {}))
            await asyncio.wait_for(fast_done.wait(), timeout=5)

            assert completed == ["https://fast.example"]
            assert not task.done()

            release_slow.set()
            reports = await task

        assert completed == ["https://fast.example", "https://slow.example"]
        assert all(r.success for r in reports)
        assert len(await store.list_deliveries(fast.id)) == 1


# ============================================================================
# Deadline and Cancellation Tests
# ============================================================================


class TestDeadline:
    """Tests for the overall delivery deadline."""

    @pytest.mark.asyncio
    async def test_deadline_exceeded_is_recorded(self, store, subscription):
        """Test that a hanging endpoint is cut off and recorded as failed."""
        dispatcher = WebhookDispatcher(
            store,
            Settings(WEBHOOK_DISPATCH_DEADLINE_SECONDS=0.05),
            random=FixedRandom(),
        )

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=hang)

            reports = await dispatcher.dispatch("chapter.created", "user-1", {})

        assert reports[0].success is False
        assert reports[0].status == 0

        deliveries = await store.list_deliveries(subscription.id)
        assert len(deliveries) == 1
        assert deliveries[0].attempts == 1
        assert deliveries[0].response_body == DEADLINE_EXCEEDED_BODY
        assert deliveries[0].is_successful is False

    @pytest.mark.asyncio
    async def test_cancellation_writes_nothing(self, dispatcher, store, subscription):
        """Test that a cancelled dispatch propagates and records no delivery."""
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.sleep(10)

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=hang)

            task = asyncio.create_task(dispatcher.dispatch("chapter.created", "user-1", {}))
            await started.wait()
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert await store.list_deliveries(subscription.id) == []
