"""Token relay: exposes a message's token sequence to incremental consumers.

A relay replays the tokens already stored, then follows the message
through store change notifications until it reaches a terminal status.
Each relay tracks its own read cursor, so any number of relays can
follow one message and all see the same sequence.
"""

import asyncio
import logging
from typing import AsyncIterator

from threadcast_models import MessageSnapshot, RelayEnd, RelayEvent, RelayToken
from threadcast.db import DocumentStore
from threadcast.errors import RelayBusyError
from threadcast.services.lifecycle import MessageLifecycle

logger = logging.getLogger(__name__)


def _end_event(snapshot: MessageSnapshot, cursor: int) -> RelayEnd:
    total = snapshot.total_tokens if snapshot.total_tokens is not None else cursor
    return RelayEnd(status=snapshot.status.value, total_tokens=total, error=snapshot.error)


class RelayHandle:
    """One open watch on a message.

    `existing_tokens` and `live` describe the message at open time.
    Iterate `events()` once to receive every token followed by exactly
    one RelayEnd.
    """

    def __init__(
        self,
        relay: "TokenRelay",
        message_id: str,
        snapshot: MessageSnapshot,
        queue: asyncio.Queue | None,
        timeout: float,
    ):
        self.message_id = message_id
        self.existing_tokens = list(snapshot.tokens)
        self.live = not snapshot.status.is_terminal
        self._relay = relay
        self._snapshot = snapshot
        self._queue = queue
        self._timeout = timeout
        self._closed = queue is None

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[RelayEvent]:
        try:
            cursor = 0
            for token in self.existing_tokens:
                yield RelayToken(token_index=cursor, token=token)
                cursor += 1

            if not self.live:
                yield _end_event(self._snapshot, cursor)
                return

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning(
                        f"Relay for {self.message_id} timed out after {self._timeout}s "
                        f"without a token ({cursor} delivered)"
                    )
                    yield RelayEnd(status="timeout", total_tokens=cursor)
                    return

                try:
                    await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue

                snapshot = await self._relay.lifecycle.read_since(self.message_id, cursor)
                for token in snapshot.tokens:
                    yield RelayToken(token_index=cursor, token=token)
                    cursor += 1
                if snapshot.tokens:
                    deadline = loop.time() + self._timeout
                if snapshot.status.is_terminal:
                    yield _end_event(snapshot, cursor)
                    return
        finally:
            await self.close()

    async def close(self) -> None:
        """Deregister the watch. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._relay._release(self.message_id, self._queue)


class TokenRelay:
    """Opens relays under a per-process ceiling.

    Only live relays hold a watch and count against the ceiling; a relay
    on a terminal message is served from one read.
    """

    def __init__(
        self,
        store: DocumentStore,
        lifecycle: MessageLifecycle,
        max_open: int = 100,
        timeout: float = 30.0,
    ):
        self._store = store
        self.lifecycle = lifecycle
        self._max_open = max_open
        self._timeout = timeout
        self._open = 0

    @property
    def open_count(self) -> int:
        return self._open

    async def open(self, message_id: str) -> RelayHandle:
        """Open a relay on a message.

        Raises:
            NotFoundError: If the message does not exist.
            RelayBusyError: If the ceiling is reached and the message is live.
        """
        if self._open >= self._max_open:
            snapshot = await self.lifecycle.read(message_id)
            if snapshot.status.is_terminal:
                return RelayHandle(self, message_id, snapshot, None, self._timeout)
            logger.warning(f"Relay ceiling reached ({self._max_open}), rejecting {message_id}")
            raise RelayBusyError(f"Too many open relays ({self._max_open})")

        # Watch first so no append can land between the snapshot and the watch
        self._open += 1
        queue = await self._store.subscribe(message_id)
        try:
            snapshot = await self.lifecycle.read(message_id)
        except BaseException:
            await self._release(message_id, queue)
            raise

        if snapshot.status.is_terminal:
            await self._release(message_id, queue)
            return RelayHandle(self, message_id, snapshot, None, self._timeout)

        logger.debug(f"Relay opened on {message_id} ({self._open} open)")
        return RelayHandle(self, message_id, snapshot, queue, self._timeout)

    async def _release(self, message_id: str, queue: asyncio.Queue) -> None:
        self._open -= 1
        await self._store.unsubscribe(message_id, queue)
        logger.debug(f"Relay closed on {message_id} ({self._open} open)")
