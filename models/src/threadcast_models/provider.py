"""Provider request/response and local model status models."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class Turn(BaseModel):
    """One prior turn sent to a provider."""

    role: Literal["user", "assistant"]
    content: str


class ProviderRequest(BaseModel):
    """Normalized request sent to any provider adapter."""

    model: str = Field(..., description="Vendor model name")
    system_prompt: str = Field("", description="Fully resolved system prompt")
    turns: list[Turn] = Field(default_factory=list, description="Turns oldest-first, ending with the new user turn")
    temperature: float = Field(0.7, description="Sampling temperature")
    max_tokens: int = Field(1024, description="Maximum tokens to generate")
    user_id: str | None = Field(None, description="Owner used to resolve the API key")


class ProviderResponse(BaseModel):
    """Result of a blocking provider call."""

    text: str
    output_tokens: int | None = None


class LoadState(str, Enum):
    """Load state of a local model, scoped to one adapter instance."""

    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class ProviderStatus(BaseModel):
    """Availability of a provider as seen by this process."""

    provider: str
    available: bool = True
    state: LoadState | None = None
    progress: float | None = Field(None, description="Load progress 0.0-1.0 while loading")
    error: str | None = None
