"""Webhook event types and envelope models.

This module defines the domain events that can be sent to a user's
external subscribers and the signed envelope they travel in.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.storage.models import ScheduleTask


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Events are organized by the entity they describe:
    - chapter.*, lecture.*, question.*, recording.*: content changes
    - schedule_task.*: generated or edited schedule tasks
    - daily.*: end-of-day summaries
    """

    CHAPTER_CREATED = "chapter.created"
    CHAPTER_UPDATED = "chapter.updated"

    LECTURE_CREATED = "lecture.created"
    LECTURE_UPDATED = "lecture.updated"
    LECTURE_COMPLETED = "lecture.completed"

    QUESTION_CREATED = "question.created"
    QUESTION_UPDATED = "question.updated"
    QUESTION_SEEN = "question.seen"

    RECORDING_CREATED = "recording.created"
    RECORDING_MARKED_DONE = "recording.marked_done"

    SCHEDULE_TASK_CREATED = "schedule_task.created"
    SCHEDULE_TASK_UPDATED = "schedule_task.updated"

    DAILY_AUDIT_SUMMARY = "daily.audit_summary"


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookEvent(BaseModel):
    """A domain event waiting to be dispatched.

    Producers create these after their own write has committed and hand
    them to the dispatcher as a separate step.
    """

    event_type: WebhookEventType
    user_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookEnvelope(BaseModel):
    """The signed JSON object delivered to a webhook endpoint.

    Field declaration order is the serialized order; the signature is
    computed over exactly those bytes.
    """

    event_type: str
    user_id: str
    timestamp: str = Field(description="ISO-8601 generation time")
    webhook_id: str = Field(description="Fresh random UUID per delivery")
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to an ordered JSON-serializable dictionary."""
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "webhook_id": self.webhook_id,
            "data": self.data,
        }


def build_envelope(
    event_type: str,
    user_id: str,
    data: dict[str, Any],
    *,
    webhook_id: str,
    timestamp: datetime | None = None,
) -> WebhookEnvelope:
    """Create a webhook envelope.

    Args:
        event_type: Type of event.
        user_id: Owner of the event.
        data: Event-specific data.
        webhook_id: Delivery identifier.
        timestamp: Optional generation time (defaults to now).

    Returns:
        WebhookEnvelope ready for signing.
    """
    return WebhookEnvelope(
        event_type=event_type,
        user_id=user_id,
        timestamp=format_timestamp(timestamp or datetime.now(UTC)),
        webhook_id=webhook_id,
        data=data,
    )


def build_task_created_event(task: ScheduleTask, **extra: Any) -> WebhookEvent:
    """Build a schedule_task.created event for a freshly written task.

    Args:
        task: The committed task.
        **extra: Entity ids the task was derived from (question_id, chapter_id, ...).

    Returns:
        Event ready for dispatch.
    """
    return WebhookEvent(
        event_type=WebhookEventType.SCHEDULE_TASK_CREATED,
        user_id=task.user_id,
        data={
            "task_id": task.id,
            "task_type": task.task_type.value,
            "task_date": task.task_date.isoformat(),
            **extra,
        },
    )
