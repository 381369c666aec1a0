"""In-process document store."""

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from threadcast_models import Message, MessageStatus, ModelThreadState, Thread

from threadcast.db.base import DocumentStore
from threadcast.db.feed import ChangeFeed
from threadcast.errors import ConflictError, NotFoundError

_APPENDABLE = (MessageStatus.PENDING, MessageStatus.GENERATING)


class MemoryStore(DocumentStore):
    """Dict-backed store with push notifications.

    Every read returns a copy, so callers never share mutable state with
    the store or with each other.
    """

    def __init__(self):
        self._threads: dict[str, Thread] = {}
        self._messages: dict[str, Message] = {}
        # thread_id -> message IDs in insertion order
        self._order: dict[str, list[str]] = defaultdict(list)
        self._feed = ChangeFeed()

    # ============= Threads =============

    async def insert_thread(self, thread: Thread) -> Thread:
        self._threads[thread.id] = thread.model_copy(deep=True)
        return thread

    async def get_thread(self, thread_id: str) -> Thread | None:
        thread = self._threads.get(thread_id)
        return thread.model_copy(deep=True) if thread else None

    async def list_threads(self, user_id: str, limit: int = 50) -> list[Thread]:
        threads = [t for t in self._threads.values() if t.user_id == user_id]
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return [t.model_copy(deep=True) for t in threads[:limit]]

    async def set_thread_title(self, thread_id: str, title: str) -> None:
        thread = self._require_thread(thread_id)
        thread.title = title
        thread.updated_at = datetime.now(timezone.utc)

    async def update_model_state(
        self,
        thread_id: str,
        model_id: str,
        *,
        message_count_delta: int = 0,
        **fields: Any,
    ) -> ModelThreadState:
        thread = self._require_thread(thread_id)
        state = thread.models.get(model_id) or ModelThreadState()
        updates = dict(fields)
        if message_count_delta:
            updates["message_count"] = state.message_count + message_count_delta
        state = state.model_copy(update=updates)
        thread.models[model_id] = state
        thread.updated_at = datetime.now(timezone.utc)
        return state.model_copy()

    async def delete_thread(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)
        for message_id in self._order.pop(thread_id, []):
            self._messages.pop(message_id, None)
            self._feed.publish(message_id)

    def _require_thread(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        return thread

    # ============= Messages =============

    async def insert_message(self, message: Message) -> Message:
        self._require_thread(message.thread_id)
        self._messages[message.id] = message.model_copy(deep=True)
        self._order[message.thread_id].append(message.id)
        self._feed.publish(message.id)
        return message

    async def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_messages(
        self, thread_id: str, model_id: str | None = None
    ) -> list[Message]:
        messages = [self._messages[i] for i in self._order.get(thread_id, [])]
        if model_id is not None:
            messages = [m for m in messages if m.model_id == model_id]
        return [m.model_copy(deep=True) for m in messages]

    async def list_messages_by_status(
        self, statuses: Iterable[MessageStatus]
    ) -> list[Message]:
        wanted = set(statuses)
        return [
            m.model_copy(deep=True)
            for m in self._messages.values()
            if m.status in wanted
        ]

    async def update_message(self, message_id: str, **fields: Any) -> Message:
        message = self._require_message(message_id)
        updated = message.model_copy(update={**fields, "version": message.version + 1})
        self._messages[message_id] = updated
        self._feed.publish(message_id)
        return updated.model_copy(deep=True)

    async def append_token(self, message_id: str, token: str) -> int:
        message = self._require_message(message_id)
        if message.status not in _APPENDABLE:
            raise ConflictError(
                f"Message {message_id} is {message.status.value}; no further tokens accepted"
            )
        message.tokens.append(token)
        message.version += 1
        self._feed.publish(message_id)
        return len(message.tokens) - 1

    async def read_tokens(self, message_id: str, start: int = 0) -> list[str]:
        return list(self._require_message(message_id).tokens[start:])

    def _require_message(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    # ============= Change notification =============

    async def subscribe(self, document_id: str) -> asyncio.Queue:
        return await self._feed.subscribe(document_id)

    async def unsubscribe(self, document_id: str, queue: asyncio.Queue) -> None:
        await self._feed.unsubscribe(document_id, queue)
