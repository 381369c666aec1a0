"""Per-user collaborators the engine consumes: API keys and system prompts.

Key storage and profile CRUD live outside the engine. The engine only
reads a decrypted key right before an outbound provider call.
"""

from abc import ABC, abstractmethod

from threadcast.config import Settings


class Accounts(ABC):
    """Accessor for per-user secrets and preferences."""

    @abstractmethod
    async def api_key(self, user_id: str | None, provider: str) -> str | None:
        """Return the decrypted API key for a provider, or None if unset."""

    @abstractmethod
    async def system_prompt(self, user_id: str) -> str:
        """Return the user's configured system prompt."""


class SettingsAccounts(Accounts):
    """Process-wide keys and prompt taken from settings."""

    def __init__(self, settings: Settings):
        self._settings = settings

    async def api_key(self, user_id: str | None, provider: str) -> str | None:
        keys = {
            "anthropic": self._settings.anthropic_api_key,
            "openai": self._settings.openai_api_key,
        }
        return keys.get(provider) or None

    async def system_prompt(self, user_id: str) -> str:
        return self._settings.default_system_prompt
