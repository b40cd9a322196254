"""Tests for the automation HTTP endpoints."""

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.api.dependencies import Services
from src.api.routes import create_app
from src.config import Settings
from src.errors import StoreError
from src.gateway.gateway import ALLOWED_RPCS, ApiKeyGateway
from src.gateway.keys import issue_api_key
from src.scheduler.generator import GenerationReport
from src.webhooks.dispatcher import DeliveryReport

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def issued_key():
    """A valid key for user-1."""
    return issue_api_key("user-1", name="Automation")


@pytest.fixture
def store(issued_key):
    """Mock store that knows one API key."""
    mock_store = MagicMock()
    mock_store.find_api_key = AsyncMock(return_value=issued_key.record)
    mock_store.touch_api_key = AsyncMock()
    mock_store.call_rpc = AsyncMock(return_value=[{"id": "task-1"}])
    return mock_store


@pytest.fixture
def services(store):
    """Services with mocked generator and dispatcher and a real gateway."""
    settings = Settings()
    generator = MagicMock()
    generator.generate = AsyncMock(
        return_value=GenerationReport(task_date=date(2024, 3, 1), tasks_created=2)
    )
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=[])
    return Services(
        settings=settings,
        store=store,
        dispatcher=dispatcher,
        generator=generator,
        gateway=ApiKeyGateway(store, settings),
    )


@pytest.fixture
def client(services):
    """Create test client around the injected services."""
    return TestClient(create_app(services=services))


# ============================================================================
# Health Tests
# ============================================================================


class TestHealth:
    """Tests for GET /health."""

    def test_health(self, client):
        """Test the liveness endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()


# ============================================================================
# Daily Scheduler Tests
# ============================================================================


class TestDailyScheduler:
    """Tests for POST /functions/daily-scheduler."""

    def test_run(self, client, services):
        """Test the success response shape."""
        response = client.post("/functions/daily-scheduler")

        assert response.status_code == 200
        assert response.json() == {"success": True, "date": "2024-03-01", "tasks_created": 2}
        services.generator.generate.assert_awaited_once_with(None)

    def test_explicit_date(self, client, services):
        """Test that the date query parameter is passed through."""
        client.post("/functions/daily-scheduler", params={"date": "2024-02-28"})

        services.generator.generate.assert_awaited_once_with(date(2024, 2, 28))

    def test_invalid_date(self, client):
        """Test that a malformed date is a 400."""
        response = client.post("/functions/daily-scheduler", params={"date": "yesterday"})

        assert response.status_code == 400
        assert "error" in response.json()

    def test_store_failure(self, client, services):
        """Test that a failed run is a 500 with the error message."""
        services.generator.generate.side_effect = StoreError(
            "no such table: profiles", operation="list_user_ids"
        )

        response = client.post("/functions/daily-scheduler")

        assert response.status_code == 500
        assert response.json() == {"error": "no such table: profiles"}


# ============================================================================
# Send Webhook Tests
# ============================================================================


class TestSendWebhook:
    """Tests for POST /functions/send-webhook."""

    def test_missing_fields(self, client, services):
        """Test that event_type and user_id are required."""
        response = client.post("/functions/send-webhook", json={"event_type": "chapter.created"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing event_type or user_id"}
        services.dispatcher.dispatch.assert_not_awaited()

    def test_unknown_event_type(self, client):
        """Test that unknown event types are rejected."""
        response = client.post(
            "/functions/send-webhook",
            json={"event_type": "chapter.deleted", "user_id": "user-1", "data": {}},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Unknown event_type: chapter.deleted"

    def test_no_subscriptions(self, client):
        """Test the response when nobody is subscribed."""
        response = client.post(
            "/functions/send-webhook",
            json={"event_type": "chapter.created", "user_id": "user-1", "data": {"id": "c1"}},
        )

        assert response.status_code == 200
        assert response.json() == {
            "message": "No subscriptions found",
            "delivered": 0,
            "total": 0,
            "results": [],
        }

    def test_processed(self, client, services):
        """Test the summary after delivering to subscriptions."""
        services.dispatcher.dispatch.return_value = [
            DeliveryReport(subscription_id="s1", subscription_name="A", success=True, status=200),
            DeliveryReport(subscription_id="s2", subscription_name="B", success=False, status=0),
        ]

        response = client.post(
            "/functions/send-webhook",
            json={"event_type": "question.seen", "user_id": "user-1", "data": {"id": "q1"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Webhooks processed"
        assert body["delivered"] == 1
        assert body["total"] == 2
        assert body["results"][1] == {
            "subscription_id": "s2",
            "subscription_name": "B",
            "success": False,
            "status": 0,
        }
        args = services.dispatcher.dispatch.await_args.args
        assert args[0] == "question.seen"
        assert args[1:] == ("user-1", {"id": "q1"})


# ============================================================================
# Read-only Key Gateway Tests
# ============================================================================


class TestValidateReadonlyKey:
    """Tests for POST /functions/validate-readonly-key."""

    def test_missing_key(self, client, store):
        """Test that requests without a key are rejected."""
        response = client.post(
            "/functions/validate-readonly-key", json={"rpc_name": "get_todays_tasks"}
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or missing API key"}
        store.call_rpc.assert_not_awaited()

    def test_bearer_key(self, client, store, issued_key):
        """Test a successful query with an Authorization header."""
        response = client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            json={"rpc_name": "get_todays_tasks", "params": {"p_date": "2024-03-01"}},
        )

        assert response.status_code == 200
        assert response.json() == {"data": [{"id": "task-1"}]}
        store.call_rpc.assert_awaited_once_with(
            "get_todays_tasks", {"p_date": "2024-03-01", "p_user_id": "user-1"}
        )

    def test_x_api_key_header(self, client, issued_key):
        """Test that the X-API-Key header is accepted."""
        response = client.post(
            "/functions/validate-readonly-key",
            headers={"X-API-Key": issued_key.raw_key},
            json={"rpc_name": "get_audit_state"},
        )

        assert response.status_code == 200

    def test_user_id_cannot_be_overridden(self, client, store, issued_key):
        """Test that p_user_id always comes from the key."""
        client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            json={"rpc_name": "get_due_questions", "params": {"p_user_id": "victim"}},
        )

        assert store.call_rpc.await_args.args[1]["p_user_id"] == "user-1"

    def test_forbidden_rpc(self, client, store, issued_key):
        """Test that write operations are refused."""
        response = client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            json={"rpc_name": "delete_chapter"},
        )

        assert response.status_code == 403
        assert response.json() == {
            "error": "Access denied. This API key only allows read-only operations.",
            "allowed_functions": list(ALLOWED_RPCS),
        }
        store.call_rpc.assert_not_awaited()

    def test_missing_rpc_name(self, client, issued_key):
        """Test that an unparseable body is a missing rpc_name."""
        response = client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            content=b"not json",
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing rpc_name in request body"}

    def test_expired_key(self, client, store, issued_key):
        """Test that expired keys get the same 401 as unknown ones."""
        store.find_api_key.return_value = issued_key.record.model_copy(
            update={"expires_at": issued_key.record.created_at.replace(year=2000)}
        )

        response = client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            json={"rpc_name": "get_todays_tasks"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or missing API key"}

    def test_downstream_failure(self, client, store, issued_key):
        """Test that a failing query is a 500."""
        store.call_rpc.side_effect = StoreError("statement timeout", operation="rpc")

        response = client.post(
            "/functions/validate-readonly-key",
            headers={"Authorization": f"Bearer {issued_key.raw_key}"},
            json={"rpc_name": "get_audit_state"},
        )

        assert response.status_code == 500
        assert response.json() == {"error": "statement timeout"}


# ============================================================================
# Application Tests
# ============================================================================


class TestApplication:
    """Tests for the application factory."""

    def test_unhandled_error_is_generic_500(self, services):
        """Test that unexpected errors do not leak details."""
        services.generator.generate.side_effect = RuntimeError("secret internals")
        client = TestClient(create_app(services=services), raise_server_exceptions=False)

        response = client.post("/functions/daily-scheduler")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_lifespan_opens_store(self, tmp_path):
        """Test that the app wires its own store when none is injected."""
        settings = Settings(DATABASE_PATH=str(tmp_path / "planner.db"))

        with TestClient(create_app(settings)) as client:
            response = client.post("/functions/daily-scheduler", params={"date": "2024-03-01"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "date": "2024-03-01", "tasks_created": 0}
        assert (tmp_path / "planner.db").exists()
