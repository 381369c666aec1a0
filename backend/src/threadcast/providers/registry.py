"""Model catalog and adapter registry."""

import logging

from pydantic import BaseModel, Field

from threadcast.config import Settings
from threadcast.errors import ValidationError
from threadcast.providers.base import ProviderAdapter
from threadcast.services.accounts import Accounts

logger = logging.getLogger(__name__)


class ModelSpec(BaseModel):
    """A model the engine can address."""

    id: str = Field(..., description="Model ID used by clients")
    provider: str = Field(..., description="Adapter name")
    vendor_model: str = Field(..., description="Model name sent to the backend")
    label: str = Field(..., description="Display name")
    context_window: int = Field(..., description="Hard context limit in tokens")
    max_output_tokens: int = Field(1024, description="Reply token cap")
    chars_per_token: float = Field(4.0, description="Approximation used for token estimates")

    @property
    def input_budget(self) -> int:
        return self.context_window - self.max_output_tokens


class ProviderRegistry:
    """Maps model IDs to their spec and adapter instance."""

    def __init__(self):
        self._models: dict[str, ModelSpec] = {}
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, spec: ModelSpec, adapter: ProviderAdapter) -> None:
        self._models[spec.id] = spec
        self._adapters[spec.id] = adapter

    def model(self, model_id: str) -> ModelSpec:
        """Get a model spec.

        Raises:
            ValidationError: If the model is unknown.
        """
        spec = self._models.get(model_id)
        if spec is None:
            raise ValidationError(f"Unknown model: {model_id}")
        return spec

    def adapter_for(self, model_id: str) -> ProviderAdapter:
        self.model(model_id)
        return self._adapters[model_id]

    def models(self) -> list[ModelSpec]:
        return list(self._models.values())


def build_registry(settings: Settings, accounts: Accounts) -> ProviderRegistry:
    """Register the default catalog against configured backends."""
    from threadcast.providers.anthropic import AnthropicAdapter
    from threadcast.providers.claude_agent import ClaudeAgentAdapter
    from threadcast.providers.mock import MockProvider
    from threadcast.providers.ollama import OllamaAdapter
    from threadcast.providers.openai import OpenAIAdapter

    registry = ProviderRegistry()

    anthropic = AnthropicAdapter(accounts, base_url=settings.anthropic_base_url)
    for model_id, vendor_model, label in [
        ("claude-sonnet", "claude-sonnet-4-5", "Claude Sonnet"),
        ("claude-haiku", "claude-haiku-4-5", "Claude Haiku"),
    ]:
        registry.register(
            ModelSpec(
                id=model_id,
                provider=anthropic.name,
                vendor_model=vendor_model,
                label=label,
                context_window=200_000,
                max_output_tokens=4096,
            ),
            anthropic,
        )

    openai = OpenAIAdapter(accounts, base_url=settings.openai_base_url)
    for model_id, label in [("gpt-4o", "GPT-4o"), ("gpt-4o-mini", "GPT-4o mini")]:
        registry.register(
            ModelSpec(
                id=model_id,
                provider=openai.name,
                vendor_model=model_id,
                label=label,
                context_window=128_000,
                max_output_tokens=4096,
            ),
            openai,
        )

    local_model = "llama3.1:8b"
    registry.register(
        ModelSpec(
            id="llama3",
            provider="ollama",
            vendor_model=local_model,
            label="Llama 3.1 8B (local)",
            context_window=8192,
            max_output_tokens=1024,
        ),
        OllamaAdapter(local_model, base_url=settings.ollama_base_url),
    )

    registry.register(
        ModelSpec(
            id="claude-agent",
            provider="claude_agent",
            vendor_model=settings.claude_agent_model,
            label="Claude (Agent SDK)",
            context_window=200_000,
            max_output_tokens=4096,
        ),
        ClaudeAgentAdapter(),
    )

    if settings.enable_mock_provider:
        registry.register(
            ModelSpec(
                id="mock",
                provider="mock",
                vendor_model="mock",
                label="Mock",
                context_window=8192,
                max_output_tokens=256,
            ),
            MockProvider(),
        )
        logger.info("Mock provider enabled")

    return registry
