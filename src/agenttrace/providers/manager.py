# src/agenttrace/providers/manager.py
"""
Provider Manager for agenttrace.

Resolves the adapter responsible for an outbound URL or a provider name.
"""

from __future__ import annotations

import logging

from .anthropic_provider import AnthropicAdapter
from .base import BaseProviderAdapter
from .gemini_provider import GeminiAdapter
from .openai_provider import OpenAIAdapter

logger = logging.getLogger(__name__)

# --- Mapping from provider name to adapter class ---
PROVIDER_MAP: dict[str, type[BaseProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GeminiAdapter,
}

# Alternative names callers use for the same vendors
PROVIDER_ALIASES: dict[str, str] = {
    "gemini": "google",
    "claude": "anthropic",
}


class ProviderManager:
    """
    Holds one adapter instance per supported vendor.

    Adapters are stateless, so a single manager can be shared freely
    between the interceptor, the streaming reconstructor and the token
    tracker.
    """

    def __init__(self, adapters: list[BaseProviderAdapter] | None = None):
        if adapters is None:
            adapters = [adapter_cls() for adapter_cls in PROVIDER_MAP.values()]
        self._adapters: dict[str, BaseProviderAdapter] = {adapter.name: adapter for adapter in adapters}
        logger.debug(f"ProviderManager initialized with adapters: {list(self._adapters)}")

    def detect(self, url: str) -> BaseProviderAdapter | None:
        """Adapter whose hosts match ``url``, or None for non-provider traffic."""
        for adapter in self._adapters.values():
            if adapter.is_request_for(url):
                return adapter
        return None

    def get_adapter(self, name: str) -> BaseProviderAdapter | None:
        key = name.lower()
        return self._adapters.get(PROVIDER_ALIASES.get(key, key))

    def get_available_providers(self) -> list[str]:
        return list(self._adapters)

    def adapters(self) -> list[BaseProviderAdapter]:
        return list(self._adapters.values())
