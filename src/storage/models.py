"""Row models for the planner data store.

These mirror the tables the automation layer reads and writes. The
generator only reads questions, recordings and chapters; it writes
schedule tasks. The dispatcher reads subscriptions and appends
deliveries. The gateway reads API keys and touches ``last_used_at``.
"""

import uuid
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


class TaskType(str, Enum):
    """Kinds of schedule task."""

    NEW_CHAPTER = "new_chapter"
    LECTURE = "lecture"
    REVISION_QUESTION = "revision_question"
    REVISION_RECORDING = "revision_recording"
    WEEKLY_TEST = "weekly_test"


class DueQuestion(BaseModel):
    """A question whose next review date has arrived."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    chapter_id: str
    content: str
    stars: int = Field(default=0, description="Difficulty rating (1-5)")
    next_due: date | None = Field(default=None, description="Date the question becomes due")


class DueRecording(BaseModel):
    """A revision recording scheduled for a given day."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    chapter_id: str
    scheduled_for: date | None = None
    is_done: bool = False


class Chapter(BaseModel):
    """Chapter row, used only to resolve recording task titles."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str


class ScheduleTask(BaseModel):
    """A to-do item on a user's daily schedule.

    At most one task exists per (user_id, task_date, task_type, reference_id).
    """

    id: str = Field(default_factory=_new_id)
    user_id: str
    task_type: TaskType
    task_date: date
    reference_id: str | None = None
    reference_type: str | None = None
    title: str
    description: str | None = None
    is_completed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WebhookSubscription(BaseModel):
    """A user's webhook endpoint registration."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str = ""
    url: str
    secret_key: str = Field(..., repr=False, description="Shared HMAC secret, never logged")
    event_types: list[str] = Field(
        default_factory=list,
        description="Event types to receive (empty = all events)",
    )
    is_active: bool = True

    def should_receive_event(self, event_type: str) -> bool:
        """Check if this subscription should receive an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True if the subscription is a wildcard or lists the event type.
        """
        if not self.event_types:
            return True
        return event_type in self.event_types


class WebhookDelivery(BaseModel):
    """Audit record of one delivery sequence to one subscription."""

    id: str = Field(default_factory=_new_id)
    subscription_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    response_status: int | None = None
    response_body: str | None = None
    attempts: int = 0
    is_successful: bool = False
    last_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ApiKey(BaseModel):
    """Stored automation key. Only the hash and lookup prefix are kept."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str = ""
    key_hash: str = Field(..., repr=False)
    key_prefix: str
    is_read_only: bool = True
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the key is past its expiry.

        Args:
            now: Reference time (defaults to current UTC time).

        Returns:
            True if the key has an expiry in the past.
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at < now
