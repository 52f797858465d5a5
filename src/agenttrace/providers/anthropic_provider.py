# src/agenttrace/providers/anthropic_provider.py
"""
Anthropic adapter.

Message content is either a string or a list of typed blocks; only
``text`` blocks contribute to the normalised text. Usage is reported as
``usage.input_tokens`` / ``usage.output_tokens``. Streams are SSE frames
typed ``message_start``, ``content_block_start``, ``content_block_delta``,
``message_delta`` and ``message_stop``.
"""

from __future__ import annotations

from typing import Any

from ..models import ModelPricing, TokenUsage
from .base import BaseProviderAdapter

_PRICES_AS_OF = "2024-12-26"


def _text_of_blocks(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text") or ""
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


class AnthropicAdapter(BaseProviderAdapter):
    """Adapter for api.anthropic.com messages."""

    name = "anthropic"
    api_hosts = ("api.anthropic.com",)
    message_roles = ("user", "assistant")
    PRICING = {
        "claude-3-5-sonnet-20241022": ModelPricing(
            input_cost_per_1k_tokens=0.003, output_cost_per_1k_tokens=0.015, last_updated=_PRICES_AS_OF
        ),
        "claude-3-5-haiku-20241022": ModelPricing(
            input_cost_per_1k_tokens=0.001, output_cost_per_1k_tokens=0.005, last_updated=_PRICES_AS_OF
        ),
        "claude-3-opus-20240229": ModelPricing(
            input_cost_per_1k_tokens=0.015, output_cost_per_1k_tokens=0.075, last_updated=_PRICES_AS_OF
        ),
        "claude-3-sonnet-20240229": ModelPricing(
            input_cost_per_1k_tokens=0.003, output_cost_per_1k_tokens=0.015, last_updated=_PRICES_AS_OF
        ),
        "claude-3-haiku-20240307": ModelPricing(
            input_cost_per_1k_tokens=0.00025, output_cost_per_1k_tokens=0.00125, last_updated=_PRICES_AS_OF
        ),
    }

    def extract_messages(self, body: Any) -> list[dict[str, str]]:
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            return []
        return [
            {"role": str(message.get("role", "")), "content": _text_of_blocks(message.get("content"))}
            for message in body["messages"]
            if isinstance(message, dict)
        ]

    def extract_system_prompt(self, body: Any) -> str | None:
        if isinstance(body, dict) and body.get("system"):
            return _text_of_blocks(body["system"]) or None
        return None

    def extract_token_usage(self, response_body: Any) -> TokenUsage | None:
        if not isinstance(response_body, dict) or not isinstance(response_body.get("usage"), dict):
            return None
        usage = response_body["usage"]
        return TokenUsage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    def extract_response_text(self, response_body: Any) -> str:
        if not isinstance(response_body, dict) or not isinstance(response_body.get("content"), list):
            return ""
        return _text_of_blocks(response_body["content"])

    def validate_request(self, body: Any) -> list[str]:
        errors = super().validate_request(body)
        if isinstance(body, dict) and not body.get("max_tokens"):
            errors.append("Missing required field: max_tokens")
        return errors

    def merge_stream_chunks(self, chunks: list[dict[str, Any]]) -> dict[str, Any]:
        merged: dict[str, Any] = {"content": [], "usage": {"input_tokens": 0, "output_tokens": 0}}
        for chunk in chunks:
            merge_anthropic_event(merged, chunk)
        return merged


def merge_anthropic_event(merged: dict[str, Any], chunk: dict[str, Any]) -> None:
    """Fold one Anthropic stream event into ``merged`` in place.

    Content blocks are addressed by the event's ``index``; text deltas are
    appended to the block at that index, creating an empty text block when
    the ``content_block_start`` was missed.
    """
    content = merged.setdefault("content", [])
    event_type = chunk.get("type")

    if event_type == "message_start" and isinstance(chunk.get("message"), dict):
        message = chunk["message"]
        for key, value in message.items():
            if key == "content" and isinstance(value, list):
                content.extend(dict(block) for block in value if isinstance(block, dict))
            elif key == "usage" and isinstance(value, dict):
                merged["usage"] = dict(value)
            else:
                merged[key] = value
        return

    index = chunk.get("index")
    if not isinstance(index, int) or index < 0:
        index = len(content) - 1 if event_type == "content_block_delta" and content else len(content)

    if event_type == "content_block_start" and isinstance(chunk.get("content_block"), dict):
        while len(content) <= index:
            content.append({"type": "text", "text": ""})
        content[index] = dict(chunk["content_block"])
        return

    delta = chunk.get("delta")
    if event_type == "message_delta":
        if isinstance(delta, dict):
            for key in ("stop_reason", "stop_sequence"):
                if key in delta:
                    merged[key] = delta[key]
        if isinstance(chunk.get("usage"), dict):
            usage = merged.setdefault("usage", {})
            usage.update(chunk["usage"])
        return

    if isinstance(delta, dict):
        while len(content) <= index:
            content.append({"type": "text", "text": ""})
        block = content[index]
        if "text" in delta:
            block["text"] = (block.get("text") or "") + (delta.get("text") or "")
        elif "partial_json" in delta:
            block["partial_json"] = (block.get("partial_json") or "") + (delta.get("partial_json") or "")
        elif "thinking" in delta:
            block["thinking"] = (block.get("thinking") or "") + (delta.get("thinking") or "")
