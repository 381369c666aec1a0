"""PostgreSQL document store with LISTEN/NOTIFY change feed."""

import asyncio
import json
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import asyncpg
from pydantic import BaseModel

from threadcast_models import (
    Message,
    MessageError,
    MessageStatus,
    ModelThreadState,
    Thread,
)
from threadcast.db.base import DocumentStore
from threadcast.db.feed import ChangeFeed
from threadcast.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "message_changes"

SCHEMA_SQL = """
-- Threads; per-model state lives in one JSONB document
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    models JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_threads_user_id ON threads(user_id);

-- Messages; assistant tokens are an append-only array
CREATE TABLE IF NOT EXISTS messages (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    model_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    tokens TEXT[] NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    is_streaming BOOLEAN NOT NULL DEFAULT FALSE,
    error JSONB,
    prompt_tokens INTEGER,
    total_tokens INTEGER,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    generation_started_at TIMESTAMPTZ,
    generation_completed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_messages_thread_model ON messages(thread_id, model_id, seq);
CREATE INDEX IF NOT EXISTS idx_messages_status ON messages(status);

CREATE OR REPLACE FUNCTION notify_message_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('message_changes', NEW.id);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS messages_notify ON messages;
CREATE TRIGGER messages_notify AFTER INSERT OR UPDATE ON messages
    FOR EACH ROW EXECUTE FUNCTION notify_message_change();
"""

_MESSAGE_COLUMNS = {
    "content",
    "status",
    "is_streaming",
    "error",
    "prompt_tokens",
    "total_tokens",
    "generation_started_at",
    "generation_completed_at",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _json_field(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class PostgresStore(DocumentStore):
    """PostgreSQL store.

    With `notify=True` a dedicated connection LISTENs on the
    `message_changes` channel fed by a row trigger. Otherwise each
    subscription polls the message's `version` column.
    """

    def __init__(self, database_url: str, notify: bool = True, poll_interval: float = 0.1):
        self._database_url = database_url
        self._notify = notify
        self._poll_interval = poll_interval
        self._pool: asyncpg.Pool | None = None
        self._listener: asyncpg.Connection | None = None
        self._feed = ChangeFeed()
        self._pollers: dict[int, asyncio.Task] = {}

    async def connect(self):
        """Create connection pool, schema and change listener."""
        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=2,
            max_size=10,
        )
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)
        if self._notify:
            self._listener = await asyncpg.connect(self._database_url)
            await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)
            logger.info(f"Listening on {NOTIFY_CHANNEL}")

    async def disconnect(self):
        """Close listener, pollers and pool."""
        for task in self._pollers.values():
            task.cancel()
        self._pollers.clear()
        if self._listener:
            await self._listener.close()
            self._listener = None
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    def _on_notify(self, connection, pid, channel, payload):
        self._feed.publish(payload)

    # ============= Threads =============

    async def insert_thread(self, thread: Thread) -> Thread:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO threads (id, user_id, title, models, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                thread.id,
                thread.user_id,
                thread.title,
                json.dumps({k: v.model_dump(mode="json") for k, v in thread.models.items()}),
                thread.created_at,
                thread.updated_at,
            )
        return thread

    async def get_thread(self, thread_id: str) -> Thread | None:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM threads WHERE id = $1", thread_id)
        if not row:
            return None
        return self._row_to_thread(row)

    async def list_threads(self, user_id: str, limit: int = 50) -> list[Thread]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM threads
                WHERE user_id = $1
                ORDER BY updated_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_thread(row) for row in rows]

    async def set_thread_title(self, thread_id: str, title: str) -> None:
        async with self.connection() as conn:
            result = await conn.execute(
                "UPDATE threads SET title = $1, updated_at = $2 WHERE id = $3",
                title,
                datetime.now(timezone.utc),
                thread_id,
            )
        if result.endswith(" 0"):
            raise NotFoundError(f"Thread {thread_id} not found")

    async def update_model_state(
        self,
        thread_id: str,
        model_id: str,
        *,
        message_count_delta: int = 0,
        **fields: Any,
    ) -> ModelThreadState:
        patch = json.dumps({k: _jsonable(v) for k, v in fields.items()})
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE threads
                SET models = jsonb_set(
                        models,
                        ARRAY[$2::text],
                        COALESCE(models->$2::text, '{}'::jsonb)
                            || $3::jsonb
                            || jsonb_build_object(
                                'message_count',
                                COALESCE((models->$2::text->>'message_count')::int, 0) + $4
                            )
                    ),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING models->$2::text AS state
                """,
                thread_id,
                model_id,
                patch,
                message_count_delta,
            )
        if not row:
            raise NotFoundError(f"Thread {thread_id} not found")
        return ModelThreadState.model_validate(_json_field(row["state"]))

    async def delete_thread(self, thread_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute("DELETE FROM threads WHERE id = $1", thread_id)

    def _row_to_thread(self, row: asyncpg.Record) -> Thread:
        models = _json_field(row["models"]) or {}
        return Thread(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            models={k: ModelThreadState.model_validate(v) for k, v in models.items()},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Messages =============

    async def insert_message(self, message: Message) -> Message:
        async with self.connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO messages (
                        id, thread_id, model_id, role, content, tokens, status,
                        is_streaming, error, prompt_tokens, total_tokens, version,
                        created_at, generation_started_at, generation_completed_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    """,
                    message.id,
                    message.thread_id,
                    message.model_id,
                    message.role,
                    message.content,
                    message.tokens,
                    message.status.value,
                    message.is_streaming,
                    json.dumps(message.error.model_dump()) if message.error else None,
                    message.prompt_tokens,
                    message.total_tokens,
                    message.version,
                    message.created_at,
                    message.generation_started_at,
                    message.generation_completed_at,
                )
            except asyncpg.ForeignKeyViolationError:
                raise NotFoundError(f"Thread {message.thread_id} not found")
        return message

    async def get_message(self, message_id: str) -> Message | None:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
        if not row:
            return None
        return self._row_to_message(row)

    async def list_messages(
        self, thread_id: str, model_id: str | None = None
    ) -> list[Message]:
        async with self.connection() as conn:
            if model_id is None:
                rows = await conn.fetch(
                    "SELECT * FROM messages WHERE thread_id = $1 ORDER BY seq ASC",
                    thread_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM messages
                    WHERE thread_id = $1 AND model_id = $2
                    ORDER BY seq ASC
                    """,
                    thread_id,
                    model_id,
                )
        return [self._row_to_message(row) for row in rows]

    async def list_messages_by_status(
        self, statuses: Iterable[MessageStatus]
    ) -> list[Message]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM messages WHERE status = ANY($1::text[]) ORDER BY seq ASC",
                [s.value for s in statuses],
            )
        return [self._row_to_message(row) for row in rows]

    async def update_message(self, message_id: str, **fields: Any) -> Message:
        unknown = set(fields) - _MESSAGE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown message fields: {sorted(unknown)}")

        updates = []
        params: list[Any] = []
        param_idx = 1

        for column, value in fields.items():
            if column == "error":
                value = json.dumps(value.model_dump()) if value is not None else None
            elif isinstance(value, Enum):
                value = value.value
            updates.append(f"{column} = ${param_idx}")
            params.append(value)
            param_idx += 1

        updates.append("version = version + 1")
        params.append(message_id)

        async with self.connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE messages SET {', '.join(updates)} WHERE id = ${param_idx} RETURNING *",
                *params,
            )
        if not row:
            raise NotFoundError(f"Message {message_id} not found")
        return self._row_to_message(row)

    async def append_token(self, message_id: str, token: str) -> int:
        async with self.connection() as conn:
            length = await conn.fetchval(
                """
                UPDATE messages
                SET tokens = array_append(tokens, $2), version = version + 1
                WHERE id = $1 AND status IN ('pending', 'generating')
                RETURNING cardinality(tokens)
                """,
                message_id,
                token,
            )
            if length is not None:
                return length - 1
            status = await conn.fetchval(
                "SELECT status FROM messages WHERE id = $1", message_id
            )
        if status is None:
            raise NotFoundError(f"Message {message_id} not found")
        raise ConflictError(f"Message {message_id} is {status}; no further tokens accepted")

    async def read_tokens(self, message_id: str, start: int = 0) -> list[str]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT tokens[$2:] AS tokens FROM messages WHERE id = $1",
                message_id,
                start + 1,
            )
        if not row:
            raise NotFoundError(f"Message {message_id} not found")
        return list(row["tokens"] or [])

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        error = _json_field(row["error"])
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            model_id=row["model_id"],
            role=row["role"],  # type: ignore
            content=row["content"],
            tokens=list(row["tokens"] or []),
            status=MessageStatus(row["status"]),
            is_streaming=row["is_streaming"],
            error=MessageError.model_validate(error) if error else None,
            prompt_tokens=row["prompt_tokens"],
            total_tokens=row["total_tokens"],
            version=row["version"],
            created_at=row["created_at"],
            generation_started_at=row["generation_started_at"],
            generation_completed_at=row["generation_completed_at"],
        )

    # ============= Change notification =============

    async def subscribe(self, document_id: str) -> asyncio.Queue:
        queue = await self._feed.subscribe(document_id)
        if not self._notify:
            self._pollers[id(queue)] = asyncio.create_task(
                self._poll_versions(document_id, queue)
            )
        return queue

    async def unsubscribe(self, document_id: str, queue: asyncio.Queue) -> None:
        poller = self._pollers.pop(id(queue), None)
        if poller:
            poller.cancel()
        await self._feed.unsubscribe(document_id, queue)

    async def _poll_versions(self, document_id: str, queue: asyncio.Queue) -> None:
        """Polling substitute for LISTEN/NOTIFY."""
        last_version = None
        while True:
            try:
                async with self.connection() as conn:
                    version = await conn.fetchval(
                        "SELECT version FROM messages WHERE id = $1", document_id
                    )
            except (asyncpg.PostgresError, OSError) as e:
                logger.warning(f"Version poll failed for {document_id}: {e}")
                version = last_version
            if version != last_version:
                last_version = version
                if not queue.full():
                    queue.put_nowait(document_id)
            await asyncio.sleep(self._poll_interval)
