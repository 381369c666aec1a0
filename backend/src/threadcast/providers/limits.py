"""Per-(user, provider) concurrency cap shared by every provider call."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    semaphore: asyncio.Semaphore
    users: int = field(default=0)


class ConcurrencyLimiter:
    """Caps concurrent provider calls per (user, provider).

    Generations, titles and summaries all take a slot, so the cap holds
    across every kind of call. Entries are dropped once nothing holds or
    waits on them.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._slots: dict[tuple[str, str], _Slot] = {}

    @property
    def tracked(self) -> int:
        """Number of (user, provider) pairs with a holder or waiter."""
        return len(self._slots)

    @asynccontextmanager
    async def slot(self, user_id: str, provider: str) -> AsyncIterator[None]:
        key = (user_id, provider)
        entry = self._slots.get(key)
        if entry is None:
            entry = _Slot(asyncio.Semaphore(self._limit))
            self._slots[key] = entry
        entry.users += 1
        try:
            if entry.semaphore.locked():
                logger.debug(f"Waiting for a {provider} slot for {user_id}")
            async with entry.semaphore:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._slots.get(key) is entry:
                del self._slots[key]
