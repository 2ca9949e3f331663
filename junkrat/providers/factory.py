"""
Build providers and the registry from Settings.

Enabled providers whose settings fail validation are skipped with a warning
rather than registered half-configured.
"""

import logging

import httpx

from junkrat.lib.config import ProviderSettings, Settings, validate_provider_settings
from junkrat.providers.base import ChatProvider
from junkrat.providers.ollama import OllamaProvider
from junkrat.providers.openai_compat import (
    CustomProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
)
from junkrat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

__all__ = ["PROVIDER_CLASSES", "create_provider", "build_registry"]

PROVIDER_CLASSES: dict[str, type[ChatProvider]] = {
    "ollama": OllamaProvider,
    "gemini": GeminiProvider,
    "openrouter": OpenRouterProvider,
    "custom": CustomProvider,
}


def create_provider(settings: ProviderSettings, client: httpx.AsyncClient | None = None) -> ChatProvider:
    """Instantiate the backend class for a provider id.

    Unknown ids are treated as extra OpenAI-compatible endpoints.
    """
    cls = PROVIDER_CLASSES.get(settings.id, OpenAICompatibleProvider)
    return cls(settings, client=client)


def build_registry(settings: Settings) -> ProviderRegistry:
    """Register every enabled, valid provider and select the active one."""
    registry = ProviderRegistry()
    for provider_settings in settings.enabled_providers():
        result = validate_provider_settings(provider_settings.id, provider_settings)
        if not result.valid:
            logger.warning(
                f"[REGISTRY] Skipping provider {provider_settings.id}: {'; '.join(result.errors)}"
            )
            continue
        registry.register(create_provider(provider_settings))

    if registry.has(settings.active_provider):
        registry.set_active(settings.active_provider)
    elif len(registry):
        logger.warning(
            f"[REGISTRY] Active provider '{settings.active_provider}' is not available, "
            f"using '{registry.active_id}'"
        )
    return registry
