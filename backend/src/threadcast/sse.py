"""Server-Sent Events transport for token relays."""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import StreamingResponse

from threadcast_models import RelayToken
from threadcast.services.relay import RelayHandle

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSE event types."""

    TOKEN = "token"
    END = "end"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


async def relay_event_stream(
    handle: RelayHandle,
    request: Request | None = None,
) -> AsyncGenerator[str, None]:
    """Encode a relay as SSE: `token` events, then one `end` event.

    Stops early when the client disconnects. The relay is closed either
    way; the generation keeps running.
    """
    events = handle.events()
    try:
        async for event in events:
            if request is not None and await request.is_disconnected():
                logger.debug(f"Client left relay for {handle.message_id}")
                break
            if isinstance(event, RelayToken):
                yield SSEEvent(
                    event=EventType.TOKEN.value,
                    data=event.model_dump(),
                    id=str(event.token_index),
                ).encode()
            else:
                yield SSEEvent(
                    event=EventType.END.value,
                    data=event.model_dump(mode="json"),
                ).encode()
    finally:
        await events.aclose()
        await handle.close()


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
