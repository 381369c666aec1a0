"""In-process change feed for document subscriptions."""

import asyncio
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Fan out "document changed" notifications to subscriber queues.

    Notifications carry only the document ID; subscribers re-read the
    document themselves. A queue holds at most one pending notification,
    so a slow subscriber sees coalesced changes rather than a backlog.
    """

    def __init__(self):
        # document_id -> list of queues
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    async def subscribe(self, document_id: str) -> asyncio.Queue:
        """Subscribe to changes of one document."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._queues[document_id].append(queue)
        logger.debug(f"Subscribed to {document_id}")
        return queue

    async def unsubscribe(self, document_id: str, queue: asyncio.Queue) -> None:
        """Remove a subscription. Unknown queues are ignored."""
        queues = self._queues.get(document_id)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            return
        if not queues:
            del self._queues[document_id]
        logger.debug(f"Unsubscribed from {document_id}")

    def publish(self, document_id: str) -> None:
        """Notify every subscriber of a document. Never blocks."""
        for queue in self._queues.get(document_id, []):
            if queue.full():
                continue
            queue.put_nowait(document_id)

    def subscriber_count(self, document_id: str) -> int:
        return len(self._queues.get(document_id, []))
