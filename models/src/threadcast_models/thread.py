"""Thread and per-model thread state models."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SummaryJobStatus(str, Enum):
    """Status of the rolling summary job for one (thread, model) pair."""

    IDLE = "idle"
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class ModelThreadState(BaseModel):
    """Conversation state for one model inside a thread.

    Only exists once the model has at least one message in the thread.
    """

    message_count: int = Field(0, description="Messages stored for this model")
    last_message_at: datetime | None = Field(None, description="Timestamp of the latest message")
    summary: str | None = Field(None, description="Rolling summary of the conversation so far")
    summary_tokens: int | None = Field(None, description="Estimated token count of the summary")
    summary_job_status: SummaryJobStatus = Field(
        default=SummaryJobStatus.IDLE, description="Summary job state"
    )
    last_temperature: float | None = Field(None, description="Temperature of the last exchange")


class Thread(BaseModel):
    """A named container for one or more model conversations."""

    id: str = Field(..., description="Unique thread ID")
    user_id: str = Field(..., description="Owner user ID")
    title: str | None = Field(None, description="Thread title")
    models: dict[str, ModelThreadState] = Field(
        default_factory=dict, description="Per-model conversation state keyed by model ID"
    )
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_now, description="Last update timestamp")

    def model_state(self, model_id: str) -> ModelThreadState | None:
        return self.models.get(model_id)


class ExchangeStarted(BaseModel):
    """Result of starting an exchange. Generation continues in the background."""

    thread_id: str
    model_id: str
    user_message_id: str
    assistant_message_id: str
    title: str | None = Field(None, description="Generated title, only on a thread's first exchange")
