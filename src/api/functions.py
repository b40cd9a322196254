"""Automation endpoints.

Provides:
- POST /functions/daily-scheduler: generate today's schedule tasks
- POST /functions/send-webhook: fan a domain event out to subscribers
- POST /functions/validate-readonly-key: key-gated read-only queries
"""

from datetime import date
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.api.dependencies import Services, get_services
from src.errors import InvalidRequestError
from src.webhooks.dispatcher import DispatchSummary
from src.webhooks.events import WebhookEventType

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/functions", tags=["Automation"])


# ============================================================================
# Request / Response Models
# ============================================================================


class SendWebhookRequest(BaseModel):
    """Domain event to deliver to a user's webhook subscriptions."""

    event_type: str | None = Field(default=None, description="Webhook event type")
    user_id: str | None = Field(default=None, description="User whose subscriptions receive it")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")


class DailySchedulerResponse(BaseModel):
    success: bool
    date: str
    tasks_created: int


class ErrorResponse(BaseModel):
    """Error response body."""

    error: str


class PermissionErrorResponse(ErrorResponse):
    allowed_functions: list[str]


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/daily-scheduler",
    response_model=DailySchedulerResponse,
    responses={500: {"description": "Generation failed", "model": ErrorResponse}},
)
async def run_daily_scheduler(
    task_date: date | None = Query(default=None, alias="date"),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Generate the day's schedule tasks for every user.

    Takes no body. ``date`` may be given to backfill a specific day;
    otherwise the current UTC date is used.
    """
    report = await services.generator.generate(task_date)

    if report.failed_users:
        logger.warning(
            "daily_scheduler_partial_failure",
            failed_users=[u.user_id for u in report.failed_users],
        )

    return report.to_response()


@router.post(
    "/send-webhook",
    response_model=DispatchSummary,
    responses={
        400: {"description": "Missing or invalid fields", "model": ErrorResponse},
        500: {"description": "Dispatch failed", "model": ErrorResponse},
    },
)
async def send_webhook(
    request: SendWebhookRequest,
    services: Services = Depends(get_services),
) -> DispatchSummary:
    """Deliver an event to the user's matching active subscriptions."""
    if not request.event_type or not request.user_id:
        raise InvalidRequestError("Missing event_type or user_id")

    try:
        event_type = WebhookEventType(request.event_type)
    except ValueError as e:
        raise InvalidRequestError(
            f"Unknown event_type: {request.event_type}",
            details={"allowed_event_types": [t.value for t in WebhookEventType]},
        ) from e

    reports = await services.dispatcher.dispatch(event_type, request.user_id, request.data)
    return DispatchSummary.from_reports(reports)


@router.post(
    "/validate-readonly-key",
    responses={
        200: {"description": "Query result as {data: ...}"},
        400: {"description": "Missing rpc_name", "model": ErrorResponse},
        401: {"description": "Missing, invalid or expired key", "model": ErrorResponse},
        403: {"description": "Operation not allowed", "model": PermissionErrorResponse},
        500: {"description": "Query failed", "model": ErrorResponse},
    },
)
async def validate_readonly_key(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Run an allowlisted read-only query on behalf of an API key holder.

    Accepts ``Authorization: Bearer <key>`` or ``X-API-Key: <key>`` and a
    body of ``{rpc_name, params?}``.
    """
    header_value = request.headers.get("authorization") or request.headers.get("x-api-key")

    try:
        body = await request.json()
    except ValueError:
        body = None

    result = await services.gateway.handle(header_value, body)
    return JSONResponse(status_code=result.status_code, content=result.body)
