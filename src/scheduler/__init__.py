"""Daily schedule task generation."""

from src.scheduler.generator import (
    DailyTaskGenerator,
    GenerationReport,
    UserTaskResult,
    question_task_title,
    recording_task_title,
)

__all__ = [
    "DailyTaskGenerator",
    "GenerationReport",
    "UserTaskResult",
    "question_task_title",
    "recording_task_title",
]
