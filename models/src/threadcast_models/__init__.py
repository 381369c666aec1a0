"""Shared Pydantic models for threadcast."""

from threadcast_models.thread import (
    ExchangeStarted,
    ModelThreadState,
    SummaryJobStatus,
    Thread,
)
from threadcast_models.message import (
    Message,
    MessageError,
    MessageSnapshot,
    MessageStatus,
    RelayEnd,
    RelayEvent,
    RelayToken,
    Role,
    TERMINAL_STATUSES,
)
from threadcast_models.provider import (
    LoadState,
    ProviderRequest,
    ProviderResponse,
    ProviderStatus,
    Turn,
)

__all__ = [
    # Threads
    "ExchangeStarted",
    "Thread",
    "ModelThreadState",
    "SummaryJobStatus",
    # Messages
    "Message",
    "MessageError",
    "MessageSnapshot",
    "MessageStatus",
    "RelayEnd",
    "RelayEvent",
    "RelayToken",
    "Role",
    "TERMINAL_STATUSES",
    # Providers
    "LoadState",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderStatus",
    "Turn",
]
