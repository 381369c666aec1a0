"""Message lifecycle and relay event models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageStatus(str, Enum):
    """Status of a message.

    Assistant messages move pending -> generating -> complete | failed | cancelled.
    User and system messages are stored as complete.
    """

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {MessageStatus.COMPLETE, MessageStatus.FAILED, MessageStatus.CANCELLED}
)

Role = Literal["user", "assistant", "system"]


class MessageError(BaseModel):
    """Classified error recorded on a failed message."""

    code: str = Field(..., description="auth, rate_limited, timeout, network or provider_error")
    message: str = Field(..., description="Human-readable error message")
    retry_count: int = Field(0, description="Retries attempted before giving up")


class Message(BaseModel):
    """A single message in a (thread, model) conversation."""

    id: str = Field(..., description="Unique message ID")
    thread_id: str = Field(..., description="Parent thread ID")
    model_id: str = Field(..., description="Model this message belongs to")
    role: Role = Field(..., description="Message role")
    content: str | None = Field(None, description="Full text for user and system messages")
    tokens: list[str] = Field(default_factory=list, description="Streamed assistant tokens")
    status: MessageStatus = Field(default=MessageStatus.COMPLETE, description="Lifecycle status")
    is_streaming: bool = Field(False, description="True while tokens are being appended")
    error: MessageError | None = Field(None, description="Error if the generation failed")
    prompt_tokens: int | None = Field(None, description="Estimated prompt tokens sent")
    total_tokens: int | None = Field(None, description="Tokens produced by the generation")
    version: int = Field(0, description="Bumped on every write")
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")
    generation_started_at: datetime | None = Field(None, description="When streaming began")
    generation_completed_at: datetime | None = Field(None, description="When a terminal status was reached")

    @property
    def text(self) -> str:
        """Message text, joining streamed tokens for assistant replies."""
        if self.content is not None:
            return self.content
        return "".join(self.tokens)


class MessageSnapshot(BaseModel):
    """Point-in-time read of a message's lifecycle state."""

    id: str
    status: MessageStatus
    tokens: list[str] = Field(default_factory=list)
    cursor: int = Field(0, description="Index of the first token in `tokens`")
    error: MessageError | None = None
    total_tokens: int | None = None


class RelayToken(BaseModel):
    """One token delivered to a relay consumer."""

    token_index: int
    token: str


class RelayEnd(BaseModel):
    """Terminal relay event. Status `timeout` ends only the watch, not the message."""

    status: Literal["complete", "failed", "cancelled", "timeout"]
    total_tokens: int | None = None
    error: MessageError | None = None


RelayEvent = RelayToken | RelayEnd
