"""Unit tests for the message lifecycle store."""

import pytest

from threadcast.db import MemoryStore
from threadcast.errors import ConflictError, NotFoundError
from threadcast.services.lifecycle import MessageLifecycle
from threadcast_models import MessageError, MessageStatus, Thread


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def lifecycle(store):
    return MessageLifecycle(store)


async def _placeholder(store, lifecycle) -> str:
    await store.insert_thread(Thread(id="t1", user_id="u1"))
    return await lifecycle.create_placeholder("t1", "model-a")


class TestMessageLifecycle:
    """Test status transitions and token appends."""

    @pytest.mark.asyncio
    async def test_placeholder_is_pending_and_empty(self, store, lifecycle):
        """Test a new placeholder is visible immediately with no tokens."""
        message_id = await _placeholder(store, lifecycle)

        snapshot = await lifecycle.read(message_id)
        assert snapshot.status is MessageStatus.PENDING
        assert snapshot.tokens == []
        assert snapshot.error is None

    @pytest.mark.asyncio
    async def test_append_returns_sequential_indices(self, store, lifecycle):
        """Test appends are index-addressed in order."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.GENERATING)

        assert await lifecycle.append_token(message_id, "Hi") == 0
        assert await lifecycle.append_token(message_id, " there") == 1
        assert (await lifecycle.read(message_id)).tokens == ["Hi", " there"]

    @pytest.mark.asyncio
    async def test_generating_marks_streaming(self, store, lifecycle):
        """Test entering generating sets the streaming flag and start time."""
        message_id = await _placeholder(store, lifecycle)

        message = await lifecycle.set_status(message_id, MessageStatus.GENERATING)

        assert message.is_streaming is True
        assert message.generation_started_at is not None

    @pytest.mark.asyncio
    async def test_complete_records_total_tokens(self, store, lifecycle):
        """Test completion clears streaming and records the token count."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.GENERATING)
        await lifecycle.append_token(message_id, "Hi")

        message = await lifecycle.set_status(
            message_id, MessageStatus.COMPLETE, total_tokens=1
        )

        assert message.is_streaming is False
        assert message.total_tokens == 1
        assert message.generation_completed_at is not None

    @pytest.mark.asyncio
    async def test_pending_can_fail_directly(self, store, lifecycle):
        """Test a placeholder can fail before any stream is obtained."""
        message_id = await _placeholder(store, lifecycle)
        error = MessageError(code="auth", message="No key")

        message = await lifecycle.set_status(message_id, MessageStatus.FAILED, error=error)

        assert message.status is MessageStatus.FAILED
        assert message.error == error

    @pytest.mark.asyncio
    async def test_append_after_terminal_conflicts(self, store, lifecycle):
        """Test tokens never change once the status is terminal."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.GENERATING)
        await lifecycle.append_token(message_id, "Hi")
        await lifecycle.set_status(message_id, MessageStatus.COMPLETE, total_tokens=1)

        with pytest.raises(ConflictError):
            await lifecycle.append_token(message_id, " again")

        assert (await lifecycle.read(message_id)).tokens == ["Hi"]
        assert (await lifecycle.read(message_id)).tokens == ["Hi"]

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store, lifecycle):
        """Test no transition leaves a terminal status."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.CANCELLED)

        with pytest.raises(ConflictError):
            await lifecycle.set_status(message_id, MessageStatus.COMPLETE)
        with pytest.raises(ConflictError):
            await lifecycle.set_status(message_id, MessageStatus.GENERATING)

    @pytest.mark.asyncio
    async def test_generating_cannot_go_back_to_pending(self, store, lifecycle):
        """Test the state machine only moves forward."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.GENERATING)

        with pytest.raises(ConflictError):
            await lifecycle.set_status(message_id, MessageStatus.PENDING)

    @pytest.mark.asyncio
    async def test_read_since_cursor(self, store, lifecycle):
        """Test cursor reads return only newer tokens."""
        message_id = await _placeholder(store, lifecycle)
        await lifecycle.set_status(message_id, MessageStatus.GENERATING)
        for token in ["a", "b", "c"]:
            await lifecycle.append_token(message_id, token)

        snapshot = await lifecycle.read_since(message_id, 2)

        assert snapshot.tokens == ["c"]
        assert snapshot.cursor == 2

    @pytest.mark.asyncio
    async def test_missing_message(self, lifecycle):
        """Test unknown message IDs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await lifecycle.read("missing")
        with pytest.raises(NotFoundError):
            await lifecycle.set_status("missing", MessageStatus.COMPLETE)
        with pytest.raises(NotFoundError):
            await lifecycle.append_token("missing", "x")
