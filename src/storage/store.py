"""SQLite-based planner store.

Holds the rows the automation layer works on: profiles, chapters,
questions, recordings, schedule tasks, webhook subscriptions, webhook
deliveries and API keys. It also implements the read-only query
functions exposed to automation clients through the key gateway.

Example:
    store = PlannerStore("./data/planner.db")
    await store.initialize()
    created = await store.create_task_if_absent(task)
    await store.close()
"""

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from src.errors import StoreError
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

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = "./data/planner.db"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chapters (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        chapter_id TEXT NOT NULL,
        content TEXT NOT NULL,
        stars INTEGER NOT NULL DEFAULT 0,
        next_due TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recordings (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        chapter_id TEXT NOT NULL,
        scheduled_for TEXT,
        is_done INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schedule_tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        task_type TEXT NOT NULL,
        task_date TEXT NOT NULL,
        reference_id TEXT,
        reference_type TEXT,
        title TEXT NOT NULL,
        description TEXT,
        is_completed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    # Idempotency key for generated tasks
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_schedule_tasks_identity
    ON schedule_tasks(user_id, task_date, task_type, reference_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        url TEXT NOT NULL,
        secret_key TEXT NOT NULL,
        event_types TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        response_status INTEGER,
        response_body TEXT,
        attempts INTEGER NOT NULL,
        is_successful INTEGER NOT NULL,
        last_attempt_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        key_hash TEXT NOT NULL,
        key_prefix TEXT NOT NULL,
        is_read_only INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT,
        last_used_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_api_keys_lookup ON api_keys(key_prefix, key_hash)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_questions_due ON questions(user_id, next_due)
    """,
]


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _date_param(params: dict[str, Any], name: str = "p_date") -> str:
    value = params.get(name)
    if value is None:
        return datetime.now(UTC).date().isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as e:
        raise StoreError(f"invalid input syntax for type date: {value!r}", operation="rpc") from e


class PlannerStore:
    """SQLite-based storage for planner rows.

    One connection is shared by all callers; every write is a single
    statement followed by a commit, so concurrent coroutines never see a
    half-written row.
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the planner store.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = db_path or DEFAULT_DB_PATH
        self._connection: aiosqlite.Connection | None = None
        self._logger = logger.bind(component="planner_store")
        self._rpcs: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "get_todays_tasks": self._rpc_get_todays_tasks,
            "get_due_questions": self._rpc_get_due_questions,
            "get_audit_state": self._rpc_get_audit_state,
            "get_changes_since": self._rpc_get_changes_since,
            "get_recordings_ready": self._rpc_get_recordings_ready,
            "get_daily_expected_state": self._rpc_get_daily_expected_state,
        }

    async def initialize(self) -> None:
        """Open the database and create tables."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row

        for statement in _SCHEMA:
            await self._connection.execute(statement)
        await self._connection.commit()

        self._logger.info("planner_store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreError("Store is not initialized", operation="connect")
        return self._connection

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except aiosqlite.Error as e:
            self._logger.error("store_operation_failed", operation=operation, error=str(e))
            raise StoreError(str(e), operation=operation) from e

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        async with self._db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    # ------------------------------------------------------------------
    # Profiles and content
    # ------------------------------------------------------------------

    async def add_profile(self, user_id: str) -> None:
        async with self._guard("add_profile"):
            await self._db.execute(
                "INSERT OR IGNORE INTO profiles (id, created_at) VALUES (?, ?)",
                (user_id, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()

    async def list_user_ids(self) -> list[str]:
        """Return every user the daily sweep should visit."""
        async with self._guard("list_user_ids"):
            rows = await self._fetch_all("SELECT id FROM profiles ORDER BY created_at, id", ())
        return [row["id"] for row in rows]

    async def add_chapter(self, chapter: Chapter) -> Chapter:
        async with self._guard("add_chapter"):
            await self._db.execute(
                "INSERT OR REPLACE INTO chapters (id, user_id, name) VALUES (?, ?, ?)",
                (chapter.id, chapter.user_id, chapter.name),
            )
            await self._db.commit()
        return chapter

    async def get_chapter_name(self, chapter_id: str) -> str | None:
        async with self._guard("get_chapter_name"):
            rows = await self._fetch_all("SELECT name FROM chapters WHERE id = ?", (chapter_id,))
        return rows[0]["name"] if rows else None

    async def add_question(self, question: DueQuestion) -> DueQuestion:
        async with self._guard("add_question"):
            await self._db.execute(
                """
                INSERT OR REPLACE INTO questions
                (id, user_id, chapter_id, content, stars, next_due, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    question.id,
                    question.user_id,
                    question.chapter_id,
                    question.content,
                    question.stars,
                    question.next_due.isoformat() if question.next_due else None,
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._db.commit()
        return question

    async def get_due_questions(self, user_id: str, today: date) -> list[DueQuestion]:
        """Questions whose next review date is today or earlier.

        Args:
            user_id: Owner of the questions.
            today: Reference date.

        Returns:
            Due questions, oldest due date first.
        """
        async with self._guard("get_due_questions"):
            rows = await self._fetch_all(
                """
                SELECT * FROM questions
                WHERE user_id = ? AND next_due IS NOT NULL AND next_due <= ?
                ORDER BY next_due, id
                """,
                (user_id, today.isoformat()),
            )
        return [self._row_to_question(row) for row in rows]

    async def add_recording(self, recording: DueRecording) -> DueRecording:
        async with self._guard("add_recording"):
            await self._db.execute(
                """
                INSERT OR REPLACE INTO recordings
                (id, user_id, chapter_id, scheduled_for, is_done, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    recording.id,
                    recording.user_id,
                    recording.chapter_id,
                    recording.scheduled_for.isoformat() if recording.scheduled_for else None,
                    int(recording.is_done),
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._db.commit()
        return recording

    async def get_pending_recordings(self, user_id: str, today: date) -> list[DueRecording]:
        """Recordings scheduled for exactly ``today`` that are not done yet."""
        async with self._guard("get_pending_recordings"):
            rows = await self._fetch_all(
                """
                SELECT * FROM recordings
                WHERE user_id = ? AND scheduled_for = ? AND is_done = 0
                ORDER BY id
                """,
                (user_id, today.isoformat()),
            )
        return [self._row_to_recording(row) for row in rows]

    # ------------------------------------------------------------------
    # Schedule tasks
    # ------------------------------------------------------------------

    async def get_task_references(
        self, user_id: str, task_date: date, task_type: TaskType
    ) -> set[str]:
        """Reference ids of the tasks a user already has for a date and type."""
        async with self._guard("get_task_references"):
            rows = await self._fetch_all(
                """
                SELECT reference_id FROM schedule_tasks
                WHERE user_id = ? AND task_date = ? AND task_type = ?
                """,
                (user_id, task_date.isoformat(), task_type.value),
            )
        return {row["reference_id"] for row in rows if row["reference_id"] is not None}

    async def create_task_if_absent(self, task: ScheduleTask) -> bool:
        """Insert a task unless one with the same identity exists.

        Identity is (user_id, task_date, task_type, reference_id), so two
        overlapping generator runs cannot both create the same task.

        Args:
            task: Task to insert.

        Returns:
            True if the row was inserted, False if it already existed.
        """
        async with self._guard("create_task"):
            cursor = await self._db.execute(
                """
                INSERT OR IGNORE INTO schedule_tasks
                (id, user_id, task_type, task_date, reference_id, reference_type,
                 title, description, is_completed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.user_id,
                    task.task_type.value,
                    task.task_date.isoformat(),
                    task.reference_id,
                    task.reference_type,
                    task.title,
                    task.description,
                    int(task.is_completed),
                    _utc_iso(task.created_at),
                ),
            )
            inserted = cursor.rowcount == 1
            await cursor.close()
            await self._db.commit()
        return inserted

    async def list_tasks(self, user_id: str, task_date: date | None = None) -> list[ScheduleTask]:
        sql = "SELECT * FROM schedule_tasks WHERE user_id = ?"
        params: tuple[Any, ...] = (user_id,)
        if task_date is not None:
            sql += " AND task_date = ?"
            params = (user_id, task_date.isoformat())
        sql += " ORDER BY created_at, id"
        async with self._guard("list_tasks"):
            rows = await self._fetch_all(sql, params)
        return [self._row_to_task(row) for row in rows]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def add_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        async with self._guard("add_subscription"):
            await self._db.execute(
                """
                INSERT OR REPLACE INTO webhook_subscriptions
                (id, user_id, name, url, secret_key, event_types, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.user_id,
                    subscription.name,
                    subscription.url,
                    subscription.secret_key,
                    json.dumps(subscription.event_types),
                    int(subscription.is_active),
                ),
            )
            await self._db.commit()
        return subscription

    async def get_active_subscriptions(self, user_id: str) -> list[WebhookSubscription]:
        async with self._guard("get_active_subscriptions"):
            rows = await self._fetch_all(
                "SELECT * FROM webhook_subscriptions WHERE user_id = ? AND is_active = 1 ORDER BY id",
                (user_id,),
            )
        return [
            WebhookSubscription(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                url=row["url"],
                secret_key=row["secret_key"],
                event_types=json.loads(row["event_types"] or "[]"),
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    async def record_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Append a delivery record to the audit trail."""
        async with self._guard("record_delivery"):
            await self._db.execute(
                """
                INSERT INTO webhook_deliveries
                (id, subscription_id, event_type, payload, response_status, response_body,
                 attempts, is_successful, last_attempt_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    delivery.id,
                    delivery.subscription_id,
                    delivery.event_type,
                    json.dumps(delivery.payload),
                    delivery.response_status,
                    delivery.response_body,
                    delivery.attempts,
                    int(delivery.is_successful),
                    _utc_iso(delivery.last_attempt_at) if delivery.last_attempt_at else None,
                    _utc_iso(delivery.created_at),
                ),
            )
            await self._db.commit()

        self._logger.debug(
            "delivery_recorded",
            delivery_id=delivery.id,
            subscription_id=delivery.subscription_id,
            is_successful=delivery.is_successful,
        )
        return delivery

    async def list_deliveries(self, subscription_id: str) -> list[WebhookDelivery]:
        async with self._guard("list_deliveries"):
            rows = await self._fetch_all(
                "SELECT * FROM webhook_deliveries WHERE subscription_id = ? ORDER BY created_at",
                (subscription_id,),
            )
        return [
            WebhookDelivery(
                id=row["id"],
                subscription_id=row["subscription_id"],
                event_type=row["event_type"],
                payload=json.loads(row["payload"]),
                response_status=row["response_status"],
                response_body=row["response_body"],
                attempts=row["attempts"],
                is_successful=bool(row["is_successful"]),
                last_attempt_at=_parse_datetime(row["last_attempt_at"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    async def add_api_key(self, api_key: ApiKey) -> ApiKey:
        async with self._guard("add_api_key"):
            await self._db.execute(
                """
                INSERT INTO api_keys
                (id, user_id, name, key_hash, key_prefix, is_read_only, is_active,
                 expires_at, last_used_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    api_key.id,
                    api_key.user_id,
                    api_key.name,
                    api_key.key_hash,
                    api_key.key_prefix,
                    int(api_key.is_read_only),
                    int(api_key.is_active),
                    _utc_iso(api_key.expires_at) if api_key.expires_at else None,
                    _utc_iso(api_key.last_used_at) if api_key.last_used_at else None,
                    _utc_iso(api_key.created_at),
                ),
            )
            await self._db.commit()
        return api_key

    async def find_api_key(self, key_hash: str, key_prefix: str) -> ApiKey | None:
        """Look up a key by both its hash and its prefix.

        The prefix narrows the search; the hash is what has to match.
        """
        async with self._guard("find_api_key"):
            rows = await self._fetch_all(
                """
                SELECT * FROM api_keys
                WHERE key_hash = ? AND key_prefix = ?
                LIMIT 1
                """,
                (key_hash, key_prefix),
            )
        if not rows:
            return None
        row = rows[0]
        return ApiKey(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            is_read_only=bool(row["is_read_only"]),
            is_active=bool(row["is_active"]),
            expires_at=_parse_datetime(row["expires_at"]),
            last_used_at=_parse_datetime(row["last_used_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        async with self._guard("touch_api_key"):
            await self._db.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (_utc_iso(used_at), key_id),
            )
            await self._db.commit()

    # ------------------------------------------------------------------
    # Read-only query functions
    # ------------------------------------------------------------------

    async def call_rpc(self, name: str, params: dict[str, Any]) -> Any:
        """Execute a read-only query function.

        Args:
            name: Function name.
            params: Function arguments; ``p_user_id`` is required.

        Returns:
            JSON-serializable result.

        Raises:
            StoreError: Unknown function, bad arguments, or query failure.
        """
        handler = self._rpcs.get(name)
        if handler is None:
            raise StoreError(f"Could not find the function {name}", operation="rpc")
        if not params.get("p_user_id"):
            raise StoreError("p_user_id is required", operation="rpc")
        async with self._guard(f"rpc:{name}"):
            return await handler(params)

    async def _rpc_get_todays_tasks(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            "SELECT * FROM schedule_tasks WHERE user_id = ? AND task_date = ? ORDER BY created_at, id",
            (params["p_user_id"], _date_param(params)),
        )
        return [self._row_to_task(row).model_dump(mode="json") for row in rows]

    async def _rpc_get_due_questions(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        due = await self.get_due_questions(
            params["p_user_id"], date.fromisoformat(_date_param(params))
        )
        return [question.model_dump(mode="json") for question in due]

    async def _rpc_get_recordings_ready(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            """
            SELECT * FROM recordings
            WHERE user_id = ? AND scheduled_for IS NOT NULL AND scheduled_for <= ? AND is_done = 0
            ORDER BY scheduled_for, id
            """,
            (params["p_user_id"], _date_param(params)),
        )
        return [self._row_to_recording(row).model_dump(mode="json") for row in rows]

    async def _rpc_get_audit_state(self, params: dict[str, Any]) -> dict[str, Any]:
        user_id = params["p_user_id"]
        day = _date_param(params)
        tasks = await self._fetch_all(
            "SELECT task_type, is_completed FROM schedule_tasks WHERE user_id = ? AND task_date = ?",
            (user_id, day),
        )
        due = await self._fetch_all(
            "SELECT COUNT(*) AS n FROM questions WHERE user_id = ? AND next_due IS NOT NULL AND next_due <= ?",
            (user_id, day),
        )
        pending = await self._fetch_all(
            "SELECT COUNT(*) AS n FROM recordings WHERE user_id = ? AND scheduled_for = ? AND is_done = 0",
            (user_id, day),
        )
        completed = sum(1 for row in tasks if row["is_completed"])
        return {
            "date": day,
            "tasks_total": len(tasks),
            "tasks_completed": completed,
            "tasks_pending": len(tasks) - completed,
            "due_questions": due[0]["n"],
            "pending_recordings": pending[0]["n"],
        }

    async def _rpc_get_changes_since(self, params: dict[str, Any]) -> dict[str, Any]:
        user_id = params["p_user_id"]
        raw_since = params.get("p_since")
        if not raw_since:
            raise StoreError("p_since is required", operation="rpc")
        try:
            since = _utc_iso(datetime.fromisoformat(str(raw_since)))
        except ValueError as e:
            raise StoreError(
                f"invalid input syntax for type timestamp: {raw_since!r}", operation="rpc"
            ) from e

        tasks = await self._fetch_all(
            "SELECT * FROM schedule_tasks WHERE user_id = ? AND created_at >= ? ORDER BY created_at",
            (user_id, since),
        )
        questions = await self._fetch_all(
            "SELECT * FROM questions WHERE user_id = ? AND updated_at >= ? ORDER BY updated_at",
            (user_id, since),
        )
        recordings = await self._fetch_all(
            "SELECT * FROM recordings WHERE user_id = ? AND updated_at >= ? ORDER BY updated_at",
            (user_id, since),
        )
        return {
            "since": since,
            "schedule_tasks": [self._row_to_task(row).model_dump(mode="json") for row in tasks],
            "questions": [self._row_to_question(row).model_dump(mode="json") for row in questions],
            "recordings": [self._row_to_recording(row).model_dump(mode="json") for row in recordings],
        }

    async def _rpc_get_daily_expected_state(self, params: dict[str, Any]) -> dict[str, Any]:
        user_id = params["p_user_id"]
        day = _date_param(params)
        due = await self._fetch_all(
            "SELECT COUNT(*) AS n FROM questions WHERE user_id = ? AND next_due IS NOT NULL AND next_due <= ?",
            (user_id, day),
        )
        chapters = await self._fetch_all(
            """
            SELECT COUNT(DISTINCT chapter_id) AS n FROM recordings
            WHERE user_id = ? AND scheduled_for = ? AND is_done = 0
            """,
            (user_id, day),
        )
        existing = await self._fetch_all(
            """
            SELECT task_type, COUNT(*) AS n FROM schedule_tasks
            WHERE user_id = ? AND task_date = ? GROUP BY task_type
            """,
            (user_id, day),
        )
        expected = {
            TaskType.REVISION_QUESTION.value: due[0]["n"],
            TaskType.REVISION_RECORDING.value: chapters[0]["n"],
        }
        actual = {row["task_type"]: row["n"] for row in existing}
        return {
            "date": day,
            "expected_tasks": expected,
            "existing_tasks": actual,
            "missing_tasks": {
                task_type: max(count - actual.get(task_type, 0), 0)
                for task_type, count in expected.items()
            },
        }

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _row_to_question(self, row: aiosqlite.Row) -> DueQuestion:
        return DueQuestion(
            id=row["id"],
            user_id=row["user_id"],
            chapter_id=row["chapter_id"],
            content=row["content"],
            stars=row["stars"],
            next_due=_parse_date(row["next_due"]),
        )

    def _row_to_recording(self, row: aiosqlite.Row) -> DueRecording:
        return DueRecording(
            id=row["id"],
            user_id=row["user_id"],
            chapter_id=row["chapter_id"],
            scheduled_for=_parse_date(row["scheduled_for"]),
            is_done=bool(row["is_done"]),
        )

    def _row_to_task(self, row: aiosqlite.Row) -> ScheduleTask:
        return ScheduleTask(
            id=row["id"],
            user_id=row["user_id"],
            task_type=TaskType(row["task_type"]),
            task_date=date.fromisoformat(row["task_date"]),
            reference_id=row["reference_id"],
            reference_type=row["reference_type"],
            title=row["title"],
            description=row["description"],
            is_completed=bool(row["is_completed"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
