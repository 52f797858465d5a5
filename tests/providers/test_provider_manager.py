# tests/providers/test_provider_manager.py
"""Tests for ProviderManager adapter lookup."""

from agenttrace.providers import AnthropicAdapter, GeminiAdapter, OpenAIAdapter, ProviderManager


def test_default_adapters():
    manager = ProviderManager()
    assert manager.get_available_providers() == ["openai", "anthropic", "google"]


def test_detect_by_url():
    manager = ProviderManager()
    assert isinstance(manager.detect("https://api.openai.com/v1/chat/completions"), OpenAIAdapter)
    assert isinstance(manager.detect("https://api.anthropic.com/v1/messages"), AnthropicAdapter)
    assert isinstance(
        manager.detect("https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent"),
        GeminiAdapter,
    )
    assert manager.detect("https://example.com/api") is None


def test_get_adapter_by_name_and_alias():
    manager = ProviderManager()
    assert isinstance(manager.get_adapter("OpenAI"), OpenAIAdapter)
    assert isinstance(manager.get_adapter("gemini"), GeminiAdapter)
    assert isinstance(manager.get_adapter("claude"), AnthropicAdapter)
    assert manager.get_adapter("mistral") is None


def test_custom_adapter_list():
    manager = ProviderManager([AnthropicAdapter()])
    assert manager.get_available_providers() == ["anthropic"]
    assert manager.detect("https://api.openai.com/v1/chat/completions") is None
    assert len(manager.adapters()) == 1
