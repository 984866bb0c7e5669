"""Provider factory: returns the right provider instance or falls back to mock."""

from __future__ import annotations

import logging

from app.core.config import get_settings

from .base import BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ProviderResult", "MockProvider"]


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    Providers outside ``AI_ALLOWED_PROVIDERS`` or missing credentials fall
    back to ``MockProvider`` with a warning.
    """
    settings = get_settings()
    name = (provider_name or "").lower().strip()

    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r not in allowlist - falling back to mock", name)
        return MockProvider()

    if name == "mock":
        return MockProvider()

    if name == "http":
        if not settings.ai_vision_api_url:
            logger.warning("AI_VISION_API_URL not set - falling back to mock")
            return MockProvider()
        from .http import HttpVisionProvider

        return HttpVisionProvider(api_url=settings.ai_vision_api_url, api_key=settings.ai_vision_api_key)

    if name == "claude":
        if not settings.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set - falling back to mock")
            return MockProvider()
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=settings.anthropic_api_key)

    if name == "openai":
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set - falling back to mock")
            return MockProvider()
        from .openai import OpenAIProvider

        return OpenAIProvider(api_key=settings.openai_api_key)

    logger.warning("Unknown provider %r - falling back to mock", name)
    return MockProvider()
