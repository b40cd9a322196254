"""Planner data store and row models."""

from src.storage.models import (
    ApiKey,
    Chapter,
    DueQuestion,
    DueRecording,
    ScheduleTask,
    TaskType,
    WebhookDelivery,
    WebhookSubscription,
)
from src.storage.store import PlannerStore

__all__ = [
    "ApiKey",
    "Chapter",
    "DueQuestion",
    "DueRecording",
    "PlannerStore",
    "ScheduleTask",
    "TaskType",
    "WebhookDelivery",
    "WebhookSubscription",
]
