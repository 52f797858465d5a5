# src/agenttrace/providers/__init__.py
"""
Provider adapters for agenttrace.

Each adapter knows one vendor's request, response and stream shapes plus
its static pricing table. ``ProviderManager`` picks the adapter for a URL.
"""

from .anthropic_provider import AnthropicAdapter
from .base import BaseProviderAdapter
from .gemini_provider import GeminiAdapter
from .manager import PROVIDER_MAP, ProviderManager
from .openai_provider import OpenAIAdapter

__all__ = [
    "AnthropicAdapter",
    "BaseProviderAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "PROVIDER_MAP",
    "ProviderManager",
]
