"""Environment configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderLiteral = Literal["gemini", "openai"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Mock control (opt-in for local development and tests)
    mock_llm: bool = False  # Serve mock responses when no credential is configured

    # Provider selection
    default_provider: ProviderLiteral = "gemini"

    # Gemini (primary, prompt-concatenation provider)
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    gemini_fallback_models: list[str] = ["gemini-2.0-flash-lite", "gemini-2.5-flash-lite"]

    # OpenAI-compatible (secondary, chat-native provider)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_fallback_models: list[str] = ["gpt-4.1-mini", "gpt-3.5-turbo"]

    # Generation parameters
    llm_temperature: float = 0.7
    llm_top_p: float = 0.95
    llm_top_k: int = 40
    llm_max_output_tokens: int = 8192
    llm_timeout_seconds: float = 60.0

    # Retry policy
    llm_max_attempts: int = 3
    llm_retry_base_delay: float = 2.0  # seconds; attempt N waits N * base

    # Rate limiting
    rate_limit_per_minute: int = 30

    # Server configuration
    port: int = 3000
    host: str = "0.0.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    def api_key_for(self, provider: str) -> str:
        """Default credential for a provider ("" when unset)."""
        return self.gemini_api_key if provider == "gemini" else self.openai_api_key

    def has_credentials(self, provider: str) -> bool:
        """Check if a default credential is configured for a provider."""
        return bool(self.api_key_for(provider).strip())

    def model_for(self, provider: str) -> str:
        """Primary model identifier for a provider."""
        return self.gemini_model if provider == "gemini" else self.openai_model

    def fallback_models_for(self, provider: str) -> list[str]:
        """Fallback model identifiers for a provider, in priority order."""
        if provider == "gemini":
            return list(self.gemini_fallback_models)
        return list(self.openai_fallback_models)

    def base_url_for(self, provider: str) -> str:
        return self.gemini_base_url if provider == "gemini" else self.openai_base_url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
