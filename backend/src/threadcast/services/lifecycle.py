"""Message lifecycle store.

Persisted state machine for each message and the single source of truth
for status and already-produced tokens:

    pending -> generating -> complete | failed | cancelled
    pending ----------------> complete | failed | cancelled

Only the orchestrator job that owns a message writes to it; readers may
observe intermediate states at any time.
"""

import logging
import uuid
from datetime import datetime, timezone

from threadcast_models import (
    Message,
    MessageError,
    MessageSnapshot,
    MessageStatus,
    Role,
)
from threadcast.db import DocumentStore
from threadcast.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

_ALLOWED = {
    MessageStatus.PENDING: {
        MessageStatus.GENERATING,
        MessageStatus.COMPLETE,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
    },
    MessageStatus.GENERATING: {
        MessageStatus.COMPLETE,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
    },
}


class MessageLifecycle:
    """Status transitions and token appends on top of the document store."""

    def __init__(self, store: DocumentStore):
        self._store = store

    async def create_placeholder(
        self, thread_id: str, model_id: str, role: Role = "assistant"
    ) -> str:
        """Create an empty pending message, visible immediately."""
        message = Message(
            id=str(uuid.uuid4()),
            thread_id=thread_id,
            model_id=model_id,
            role=role,
            status=MessageStatus.PENDING,
        )
        await self._store.insert_message(message)
        return message.id

    async def append_token(self, message_id: str, token: str) -> int:
        """Append a token.

        Raises:
            ConflictError: If the message is terminal.
        """
        return await self._store.append_token(message_id, token)

    async def set_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        error: MessageError | None = None,
        total_tokens: int | None = None,
        prompt_tokens: int | None = None,
    ) -> Message:
        """Move a message to a new status.

        Raises:
            NotFoundError: If the message does not exist.
            ConflictError: If the transition is not allowed.
        """
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")

        if status not in _ALLOWED.get(message.status, set()):
            raise ConflictError(
                f"Message {message_id}: {message.status.value} -> {status.value} not allowed"
            )

        fields: dict = {"status": status}
        now = datetime.now(timezone.utc)
        if status is MessageStatus.GENERATING:
            fields["is_streaming"] = True
            fields["generation_started_at"] = now
        else:
            fields["is_streaming"] = False
            fields["generation_completed_at"] = now
        if error is not None:
            fields["error"] = error
        if total_tokens is not None:
            fields["total_tokens"] = total_tokens
        if prompt_tokens is not None:
            fields["prompt_tokens"] = prompt_tokens

        updated = await self._store.update_message(message_id, **fields)
        logger.debug(f"Message {message_id}: {message.status.value} -> {status.value}")
        return updated

    async def read(self, message_id: str) -> MessageSnapshot:
        return await self.read_since(message_id, 0)

    async def read_since(self, message_id: str, cursor: int) -> MessageSnapshot:
        """Read status and the tokens at index `cursor` onward.

        Status is read before tokens. A reader that sees a terminal status
        therefore also sees every token, because no append follows a
        terminal status.
        """
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        tokens = await self._store.read_tokens(message_id, cursor)
        return MessageSnapshot(
            id=message.id,
            status=message.status,
            tokens=tokens,
            cursor=cursor,
            error=message.error,
            total_tokens=message.total_tokens,
        )
