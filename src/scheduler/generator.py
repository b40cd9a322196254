"""Daily schedule task generation.

Derives each user's to-do list for a day from due state in the store:
questions whose next review date has arrived become ``revision_question``
tasks, and revision recordings scheduled for the day become
``revision_recording`` tasks (one per chapter).

Running the generator twice for the same day creates nothing the second
time: existing tasks are skipped, and the insert itself is ignored when a
task with the same (user, date, type, reference) already exists, which
also covers two runs overlapping.

A ``schedule_task.created`` event is emitted for each task after the
task is written. Emission failures are logged and never undo the task.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.config import Settings
from src.storage.models import DueQuestion, DueRecording, ScheduleTask, TaskType
from src.storage.store import PlannerStore
from src.webhooks.events import WebhookEvent, build_task_created_event

logger = structlog.get_logger(__name__)

TITLE_MAX_CHARS = 50
UNKNOWN_CHAPTER = "Unknown chapter"
RECORDING_TASK_DESCRIPTION = "Complete your revision recording for this chapter"

EventEmitter = Callable[[WebhookEvent], Awaitable[Any]]


def question_task_title(content: str) -> str:
    """Title for a question revision task.

    Args:
        content: Question text.

    Returns:
        ``Review: `` plus the first 50 characters, with ``...`` when cut.
    """
    suffix = "..." if len(content) > TITLE_MAX_CHARS else ""
    return f"Review: {content[:TITLE_MAX_CHARS]}{suffix}"


def question_task_description(stars: int) -> str:
    return f"{stars}★ question due for revision"


def recording_task_title(chapter_name: str | None) -> str:
    return f"Record revision: {chapter_name or UNKNOWN_CHAPTER}"


class UserTaskResult(BaseModel):
    """Outcome of generating one user's tasks."""

    user_id: str
    tasks_created: int = 0
    events_emitted: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class GenerationReport(BaseModel):
    """Result of one daily generation run."""

    task_date: date
    tasks_created: int
    users: list[UserTaskResult] = Field(default_factory=list)

    @property
    def failed_users(self) -> list[UserTaskResult]:
        return [u for u in self.users if not u.succeeded]

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "date": self.task_date.isoformat(),
            "tasks_created": self.tasks_created,
        }


class DailyTaskGenerator:
    """Creates the day's schedule tasks for every user.

    Users are processed concurrently up to a fixed limit. Each user is
    independent: a failure for one user is recorded in that user's
    result and the rest of the sweep continues.

    Example:
        generator = DailyTaskGenerator(store, settings, emit=dispatcher.dispatch_event)
        report = await generator.generate(date(2024, 3, 1))
    """

    def __init__(
        self,
        store: PlannerStore,
        settings: Settings | None = None,
        *,
        emit: EventEmitter | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            store: Planner store.
            settings: Concurrency configuration.
            emit: Receives a ``schedule_task.created`` event per new task.
        """
        settings = settings or Settings()
        self._store = store
        self._emit = emit
        self._max_concurrent = max(1, settings.SCHEDULER_MAX_CONCURRENT_USERS)
        self._logger = logger.bind(component="daily_task_generator")

    async def generate(self, today: date | None = None) -> GenerationReport:
        """Generate tasks for ``today`` for all users.

        Args:
            today: Day to generate for (defaults to the current UTC date).

        Returns:
            Report with the total and per-user counts.

        Raises:
            StoreError: If the user list cannot be loaded.
        """
        today = today or datetime.now(UTC).date()
        self._logger.info("daily_generation_started", date=today.isoformat())

        user_ids = await self._store.list_user_ids()
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def run(user_id: str) -> UserTaskResult:
            events: list[WebhookEvent] = []
            async with semaphore:
                result = await self._process_user(user_id, today, events)
            # Emission runs outside the concurrency slot
            await self._emit_events(result, events)
            return result

        results = await asyncio.gather(*(run(user_id) for user_id in user_ids))

        report = GenerationReport(
            task_date=today,
            tasks_created=sum(r.tasks_created for r in results),
            users=list(results),
        )

        self._logger.info(
            "daily_generation_completed",
            date=today.isoformat(),
            users=len(results),
            failed_users=len(report.failed_users),
            tasks_created=report.tasks_created,
        )
        return report

    async def _process_user(
        self, user_id: str, today: date, events: list[WebhookEvent]
    ) -> UserTaskResult:
        """Create one user's tasks, collecting an event per new task into ``events``.

        Tasks written before a failure stay written and keep their events.
        """
        result = UserTaskResult(user_id=user_id)
        log = self._logger.bind(user_id=user_id, date=today.isoformat())

        try:
            await self._create_question_tasks(user_id, today, result, events)
            await self._create_recording_tasks(user_id, today, result, events)
        except Exception as e:
            result.error = str(e) or e.__class__.__name__
            log.error(
                "user_generation_failed",
                error=result.error,
                tasks_created=result.tasks_created,
            )

        log.debug("user_generation_finished", tasks_created=result.tasks_created)
        return result

    async def _create_question_tasks(
        self,
        user_id: str,
        today: date,
        result: UserTaskResult,
        events: list[WebhookEvent],
    ) -> None:
        due_questions = await self._store.get_due_questions(user_id, today)
        existing = await self._store.get_task_references(
            user_id, today, TaskType.REVISION_QUESTION
        )

        for question in due_questions:
            if question.id in existing:
                continue
            task = self._question_task(question, today)
            if await self._store.create_task_if_absent(task):
                existing.add(question.id)
                result.tasks_created += 1
                events.append(build_task_created_event(task, question_id=question.id))

    async def _create_recording_tasks(
        self,
        user_id: str,
        today: date,
        result: UserTaskResult,
        events: list[WebhookEvent],
    ) -> None:
        recordings = await self._store.get_pending_recordings(user_id, today)
        existing = await self._store.get_task_references(
            user_id, today, TaskType.REVISION_RECORDING
        )

        for recording in recordings:
            if recording.chapter_id in existing:
                continue
            chapter_name = await self._lookup_chapter_name(recording.chapter_id)
            task = self._recording_task(recording, today, chapter_name)
            existing.add(recording.chapter_id)
            if await self._store.create_task_if_absent(task):
                result.tasks_created += 1
                events.append(
                    build_task_created_event(
                        task, chapter_id=recording.chapter_id, recording_id=recording.id
                    )
                )

    async def _lookup_chapter_name(self, chapter_id: str) -> str | None:
        try:
            return await self._store.get_chapter_name(chapter_id)
        except Exception as e:
            self._logger.warning("chapter_lookup_failed", chapter_id=chapter_id, error=str(e))
            return None

    def _question_task(self, question: DueQuestion, today: date) -> ScheduleTask:
        return ScheduleTask(
            user_id=question.user_id,
            task_type=TaskType.REVISION_QUESTION,
            task_date=today,
            reference_id=question.id,
            reference_type="question",
            title=question_task_title(question.content),
            description=question_task_description(question.stars),
        )

    def _recording_task(
        self, recording: DueRecording, today: date, chapter_name: str | None
    ) -> ScheduleTask:
        return ScheduleTask(
            user_id=recording.user_id,
            task_type=TaskType.REVISION_RECORDING,
            task_date=today,
            reference_id=recording.chapter_id,
            reference_type="chapter",
            title=recording_task_title(chapter_name),
            description=RECORDING_TASK_DESCRIPTION,
        )

    async def _emit_events(self, result: UserTaskResult, events: list[WebhookEvent]) -> None:
        """Emit a user's events concurrently; failures are logged per event."""
        if self._emit is None or not events:
            return

        outcomes = await asyncio.gather(
            *(self._emit(event) for event in events), return_exceptions=True
        )
        for event, outcome in zip(events, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self._logger.error(
                    "task_event_emit_failed",
                    user_id=result.user_id,
                    task_id=event.data.get("task_id"),
                    error=str(outcome) or outcome.__class__.__name__,
                )
            else:
                result.events_emitted += 1
