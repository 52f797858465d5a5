# src/agenttrace/providers/openai_provider.py
"""
OpenAI adapter.

Requests carry ``model`` and ``messages``; responses report usage as
``usage.prompt_tokens`` / ``usage.completion_tokens``; streams are SSE
frames whose ``choices[].delta`` fragments (content, legacy
``function_call`` and indexed ``tool_calls``) must be concatenated.
"""

from __future__ import annotations

import math
from typing import Any

from ..models import ModelPricing, TokenUsage
from .base import BaseProviderAdapter

_PRICES_AS_OF = "2024-12-26"


def _format_call(name: Any, arguments: Any) -> str:
    return f"{name}({arguments})"


class OpenAIAdapter(BaseProviderAdapter):
    """Adapter for api.openai.com chat completions."""

    name = "openai"
    api_hosts = ("api.openai.com",)
    message_roles = ("system", "user", "assistant", "function", "tool")
    PRICING = {
        "gpt-4o": ModelPricing(
            input_cost_per_1k_tokens=0.0025, output_cost_per_1k_tokens=0.01, last_updated=_PRICES_AS_OF
        ),
        "gpt-4o-mini": ModelPricing(
            input_cost_per_1k_tokens=0.00015, output_cost_per_1k_tokens=0.0006, last_updated=_PRICES_AS_OF
        ),
        "gpt-4-turbo": ModelPricing(
            input_cost_per_1k_tokens=0.01, output_cost_per_1k_tokens=0.03, last_updated=_PRICES_AS_OF
        ),
        "gpt-4": ModelPricing(
            input_cost_per_1k_tokens=0.03, output_cost_per_1k_tokens=0.06, last_updated=_PRICES_AS_OF
        ),
        "gpt-3.5-turbo": ModelPricing(
            input_cost_per_1k_tokens=0.0015, output_cost_per_1k_tokens=0.002, last_updated=_PRICES_AS_OF
        ),
    }

    def extract_messages(self, body: Any) -> list[dict[str, str]]:
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            return []
        return [
            {"role": str(message.get("role", "")), "content": self._message_text(message)}
            for message in body["messages"]
            if isinstance(message, dict)
        ]

    def _message_text(self, message: dict[str, Any]) -> str:
        if isinstance(message.get("content"), str):
            return message["content"]

        content = ""
        function_call = message.get("function_call")
        if isinstance(function_call, dict):
            content += "Function call: " + _format_call(
                function_call.get("name"), function_call.get("arguments")
            )
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            content += "; ".join(
                "Tool call: " + _format_call(call.get("function", {}).get("name"), call.get("function", {}).get("arguments"))
                for call in tool_calls
                if isinstance(call, dict)
            )
        return content

    def extract_token_usage(self, response_body: Any) -> TokenUsage | None:
        if not isinstance(response_body, dict) or not isinstance(response_body.get("usage"), dict):
            return None
        usage = response_body["usage"]
        return TokenUsage(
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )

    def extract_response_text(self, response_body: Any) -> str:
        if not isinstance(response_body, dict):
            return ""
        choices = response_body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        if message.get("content"):
            return message["content"]
        function_call = message.get("function_call")
        if function_call:
            return "Function call: " + _format_call(function_call.get("name"), function_call.get("arguments"))
        tool_calls = message.get("tool_calls")
        if tool_calls:
            return "; ".join(
                "Tool call: " + _format_call((call.get("function") or {}).get("name"), (call.get("function") or {}).get("arguments"))
                for call in tool_calls
                if isinstance(call, dict)
            )
        return ""

    def estimate_tokens(self, text: str, model: str | None = None) -> int:
        # gpt-4o family uses the o200k tokenizer, which packs slightly more text per token
        if model and "gpt-4o" in model.lower():
            return math.ceil(len(text) / 3.5)
        return super().estimate_tokens(text, model)

    def merge_stream_chunks(self, chunks: list[dict[str, Any]]) -> dict[str, Any]:
        merged: dict[str, Any] = {
            "choices": [],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }
        if chunks:
            first = chunks[0]
            merged.update(
                id=first.get("id"),
                object="chat.completion",
                created=first.get("created"),
                model=first.get("model"),
            )

        for chunk in chunks:
            for choice in chunk.get("choices") or []:
                merge_openai_choice(merged["choices"], choice)
            if chunk.get("usage"):
                merged["usage"] = chunk["usage"]
        return merged


def merge_openai_choice(choices: list[dict[str, Any]], choice: dict[str, Any]) -> None:
    """Fold one streamed ``choices[]`` entry into the accumulated ``choices`` list in place."""
    index = choice.get("index", 0)
    if not isinstance(index, int) or index < 0:
        index = 0
    while len(choices) <= index:
        choices.append(
            {"index": len(choices), "message": {"role": "assistant", "content": ""}, "finish_reason": None}
        )
    target = choices[index]
    message = target["message"]
    delta = choice.get("delta") or {}

    if delta.get("role"):
        message["role"] = delta["role"]
    if delta.get("content"):
        message["content"] = (message.get("content") or "") + delta["content"]

    function_call = delta.get("function_call")
    if isinstance(function_call, dict):
        merged_call = message.setdefault("function_call", {"name": "", "arguments": ""})
        merged_call["name"] += function_call.get("name") or ""
        merged_call["arguments"] += function_call.get("arguments") or ""

    for tool_call in delta.get("tool_calls") or []:
        tool_calls = message.setdefault("tool_calls", [])
        tool_index = tool_call.get("index", len(tool_calls))
        while len(tool_calls) <= tool_index:
            tool_calls.append({"id": "", "type": "function", "function": {"name": "", "arguments": ""}})
        merged_tool = tool_calls[tool_index]
        if tool_call.get("id"):
            merged_tool["id"] = tool_call["id"]
        function = tool_call.get("function") or {}
        merged_tool["function"]["name"] += function.get("name") or ""
        merged_tool["function"]["arguments"] += function.get("arguments") or ""

    if choice.get("finish_reason"):
        target["finish_reason"] = choice["finish_reason"]
