"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Iterator

import pytest

from hr_agent_api.config import Settings

# Set test environment variables before importing app modules
os.environ.setdefault("GEMINI_API_KEY", "")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("ENVIRONMENT", "development")
# Increase rate limit for testing
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
# Serve mock LLM responses when no key is configured
os.environ.setdefault("MOCK_LLM", "true")


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    """Reset cached settings and shared clients before each test."""
    from hr_agent_api.config import get_settings
    from hr_agent_api.providers import reset_provider_clients

    get_settings.cache_clear()
    reset_provider_clients()

    # Reset rate limiter storage
    try:
        from hr_agent_api.main import limiter

        if hasattr(limiter, "_storage") and limiter._storage:
            limiter._storage.reset()
    except (ImportError, AttributeError):
        pass

    yield
    get_settings.cache_clear()
    reset_provider_clients()


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Fixture to set test settings."""

    def _mock_settings(**kwargs: str) -> Settings:
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        from hr_agent_api.config import get_settings

        get_settings.cache_clear()
        return get_settings()

    return _mock_settings
