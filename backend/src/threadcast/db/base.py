"""Document store contract.

The store offers per-document atomic updates, an atomic conditional
token append, and a subscribe primitive that pushes a notification on
every change to a document. Implementations may push or poll.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from threadcast_models import Message, MessageStatus, ModelThreadState, Thread


class DocumentStore(ABC):
    """Persistence capability consumed by the engine."""

    async def connect(self) -> None:
        """Open connections. No-op for in-process stores."""

    async def disconnect(self) -> None:
        """Close connections."""

    # ============= Threads =============

    @abstractmethod
    async def insert_thread(self, thread: Thread) -> Thread: ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Thread | None: ...

    @abstractmethod
    async def list_threads(self, user_id: str, limit: int = 50) -> list[Thread]: ...

    @abstractmethod
    async def set_thread_title(self, thread_id: str, title: str) -> None: ...

    @abstractmethod
    async def update_model_state(
        self,
        thread_id: str,
        model_id: str,
        *,
        message_count_delta: int = 0,
        **fields: Any,
    ) -> ModelThreadState:
        """Create or update one model's state inside a thread, atomically."""

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread and cascade to its messages."""

    # ============= Messages =============

    @abstractmethod
    async def insert_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None: ...

    @abstractmethod
    async def list_messages(
        self, thread_id: str, model_id: str | None = None
    ) -> list[Message]:
        """Messages of a thread in chronological order."""

    @abstractmethod
    async def list_messages_by_status(
        self, statuses: Iterable[MessageStatus]
    ) -> list[Message]: ...

    @abstractmethod
    async def update_message(self, message_id: str, **fields: Any) -> Message:
        """Update message fields and bump its version.

        Raises:
            NotFoundError: If the message does not exist.
        """

    @abstractmethod
    async def append_token(self, message_id: str, token: str) -> int:
        """Append one token while the message is pending or generating.

        Returns:
            Index of the appended token.

        Raises:
            NotFoundError: If the message does not exist.
            ConflictError: If the message has a terminal status.
        """

    @abstractmethod
    async def read_tokens(self, message_id: str, start: int = 0) -> list[str]: ...

    # ============= Change notification =============

    @abstractmethod
    async def subscribe(self, document_id: str) -> asyncio.Queue:
        """Get a queue that receives the document ID on every change."""

    @abstractmethod
    async def unsubscribe(self, document_id: str, queue: asyncio.Queue) -> None: ...
