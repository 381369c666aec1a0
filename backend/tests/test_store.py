"""Unit tests for the in-process document store and change feed."""

import asyncio

import pytest

from threadcast.db import MemoryStore
from threadcast.db.feed import ChangeFeed
from threadcast.errors import NotFoundError
from threadcast_models import Message, MessageStatus, Thread


def _message(message_id: str, model_id: str = "model-a", **fields) -> Message:
    values = {
        "id": message_id,
        "thread_id": "t1",
        "model_id": model_id,
        "role": "user",
        "content": message_id,
    }
    values.update(fields)
    return Message(**values)


@pytest.fixture
def store():
    return MemoryStore()


class TestChangeFeed:
    """Test subscription fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self):
        """Test each subscriber queue receives the document ID."""
        feed = ChangeFeed()
        first = await feed.subscribe("doc")
        second = await feed.subscribe("doc")

        feed.publish("doc")

        assert first.get_nowait() == "doc"
        assert second.get_nowait() == "doc"

    @pytest.mark.asyncio
    async def test_notifications_coalesce(self):
        """Test a slow subscriber holds one pending notification."""
        feed = ChangeFeed()
        queue = await feed.subscribe("doc")

        for _ in range(5):
            feed.publish("doc")

        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self):
        """Test unsubscribing twice is harmless."""
        feed = ChangeFeed()
        queue = await feed.subscribe("doc")

        await feed.unsubscribe("doc", queue)
        await feed.unsubscribe("doc", queue)

        feed.publish("doc")
        assert queue.empty()
        assert feed.subscriber_count("doc") == 0


class TestMemoryStore:
    """Test MemoryStore document operations."""

    @pytest.mark.asyncio
    async def test_messages_listed_in_order_per_model(self, store):
        """Test messages come back chronologically, filtered by model."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))
        await store.insert_message(_message("m1"))
        await store.insert_message(_message("m2", model_id="model-b"))
        await store.insert_message(_message("m3"))

        messages = await store.list_messages("t1", "model-a")

        assert [m.id for m in messages] == ["m1", "m3"]
        assert len(await store.list_messages("t1")) == 3

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        """Test callers cannot mutate stored state."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))
        await store.insert_message(_message("m1", role="assistant", content=None))

        message = await store.get_message("m1")
        message.tokens.append("rogue")

        assert (await store.get_message("m1")).tokens == []

    @pytest.mark.asyncio
    async def test_update_bumps_version_and_notifies(self, store):
        """Test every message write bumps the version and publishes."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))
        await store.insert_message(
            _message("m1", role="assistant", content=None, status=MessageStatus.PENDING)
        )
        queue = await store.subscribe("m1")

        updated = await store.update_message("m1", status=MessageStatus.GENERATING)
        await store.append_token("m1", "Hi")

        assert updated.version == 1
        assert (await store.get_message("m1")).version == 2
        assert await asyncio.wait_for(queue.get(), timeout=1) == "m1"

    @pytest.mark.asyncio
    async def test_update_model_state_upserts(self, store):
        """Test per-model state is created on first write and incremented after."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))

        await store.update_model_state("t1", "model-a", message_count_delta=2)
        state = await store.update_model_state(
            "t1", "model-a", message_count_delta=2, last_temperature=0.3
        )

        assert state.message_count == 4
        assert state.last_temperature == 0.3
        thread = await store.get_thread("t1")
        assert thread.models["model-a"].message_count == 4

    @pytest.mark.asyncio
    async def test_delete_thread_cascades(self, store):
        """Test deleting a thread removes its messages."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))
        await store.insert_message(_message("m1"))

        await store.delete_thread("t1")

        assert await store.get_thread("t1") is None
        assert await store.get_message("m1") is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, store):
        """Test listing messages by lifecycle status."""
        await store.insert_thread(Thread(id="t1", user_id="u1"))
        await store.insert_message(_message("m1"))
        await store.insert_message(
            _message("m2", role="assistant", content=None, status=MessageStatus.GENERATING)
        )

        found = await store.list_messages_by_status([MessageStatus.GENERATING])

        assert [m.id for m in found] == ["m2"]

    @pytest.mark.asyncio
    async def test_message_requires_thread(self, store):
        """Test messages cannot be inserted into a missing thread."""
        with pytest.raises(NotFoundError):
            await store.insert_message(_message("m1"))
