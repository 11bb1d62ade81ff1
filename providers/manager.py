"""
Provider Manager — builds the vision and embedding providers the pipeline uses.

Keys are read from key_store (DB → .env fallback) at build time. The caller
(pipeline.build_pipeline) owns the returned instances; nothing is cached at
module level.

Provider names:
  openai     — vision + embeddings     (OPENAI_API_KEY)
  google     — vision + embeddings     (GOOGLE_API_KEY)
  anthropic  — vision only             (ANTHROPIC_API_KEY)
"""
from __future__ import annotations

import logging

from errors import ConfigurationError
from providers.base import InferenceProvider

logger = logging.getLogger(__name__)

_KEY_NAMES: dict[str, str] = {
    "openai":    "openai_api_key",
    "google":    "google_api_key",
    "anthropic": "anthropic_api_key",
}


async def _api_key_for(provider_name: str) -> str:
    import key_store

    key_name = _KEY_NAMES.get(provider_name)
    if key_name is None:
        available = ", ".join(_KEY_NAMES)
        raise ConfigurationError(
            f"Unknown provider '{provider_name}'. Available: {available}"
        )
    api_key = await key_store.get(key_name)
    if not api_key:
        raise ConfigurationError(
            f"Provider '{provider_name}' selected but {key_name.upper()} is not set."
        )
    return api_key


def _instantiate(provider_name: str, api_key: str, model: str, timeout: float) -> InferenceProvider:
    if provider_name == "openai":
        from providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, model, timeout=timeout)
    if provider_name == "google":
        from providers.gemini_provider import GeminiProvider
        return GeminiProvider(api_key, model)
    if provider_name == "anthropic":
        from providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, model, timeout=timeout)
    raise ConfigurationError(f"Unknown provider '{provider_name}'")


async def build_vision_provider(
    provider_name: str, model: str, timeout: float = 45.0,
) -> InferenceProvider:
    api_key = await _api_key_for(provider_name)
    provider = _instantiate(provider_name, api_key, model, timeout)
    logger.info("Vision provider: %s", provider.full_name)
    return provider


async def build_embedding_provider(
    provider_name: str, model: str, timeout: float = 45.0,
) -> InferenceProvider:
    api_key = await _api_key_for(provider_name)
    provider = _instantiate(provider_name, api_key, model, timeout)
    if not provider.supports_embeddings:
        raise ConfigurationError(
            f"{provider.full_name} cannot produce embeddings; "
            "set EMBEDDING_PROVIDER to openai or google."
        )
    logger.info("Embedding provider: %s", provider.full_name)
    return provider
