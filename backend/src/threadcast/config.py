"""Configuration management."""

from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Store
    store_backend: Literal["memory", "postgres"] = "memory"
    store_notify: bool = True  # LISTEN/NOTIFY; polls when disabled
    store_poll_interval: float = 0.1

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "threadcast"
    db_user: str = "threadcast"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Providers
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    ollama_base_url: str = "http://localhost:11434"
    claude_agent_model: str = "sonnet"
    enable_mock_provider: bool = False

    # Generation limits (seconds)
    generation_timeout: float = 180.0
    token_timeout: float = 30.0
    max_concurrent_generations: int = 3  # Per (user, provider)

    # Relay limits
    relay_timeout: float = 30.0
    max_open_relays: int = 100

    # Context assembly
    context_token_budget: int = 6000
    default_system_prompt: str = "You are a helpful assistant."
    default_temperature: float = 0.7

    # Title and summary jobs
    title_timeout: float = 10.0
    title_max_tokens: int = 24
    summary_min_tokens: int = 300
    summary_max_tokens: int = 700
    summary_context_budget: int = 12000

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
