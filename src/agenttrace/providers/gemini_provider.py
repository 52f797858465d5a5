# src/agenttrace/providers/gemini_provider.py
"""
Google Gemini adapter.

The model name lives in the URL path (``/models/<model>:generateContent``)
rather than the body. Conversations are ``contents[]`` of ``parts[]``,
with ``model`` as the assistant role. Usage is reported in
``usageMetadata``. Streams are newline-delimited JSON, sometimes served as
``text/plain``, or SSE when ``alt=sse`` is requested.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..models import ModelPricing, TokenUsage
from .base import SSE_DATA_PREFIX, BaseProviderAdapter

logger = logging.getLogger(__name__)

_PRICES_AS_OF = "2024-12-26"

_MODEL_IN_URL = re.compile(r"/models/([^:/?]+)")


def _part_text(part: Any) -> str:
    if not isinstance(part, dict):
        return ""
    if part.get("text"):
        return part["text"]
    function_call = part.get("functionCall") or part.get("function_call")
    if isinstance(function_call, dict):
        return f"Function call: {function_call.get('name')}({json.dumps(function_call.get('args'))})"
    function_response = part.get("functionResponse") or part.get("function_response")
    if isinstance(function_response, dict):
        return f"Function response: {function_response.get('name')}"
    return ""


class GeminiAdapter(BaseProviderAdapter):
    """Adapter for generativelanguage.googleapis.com."""

    name = "google"
    api_hosts = ("generativelanguage.googleapis.com", "ai.google.dev")
    stream_content_types = ("application/x-ndjson", "text/plain", "text/event-stream")
    message_roles = ("user", "model")
    PRICING = {
        "gemini-2.0-flash-exp": ModelPricing(
            input_cost_per_1k_tokens=0.0, output_cost_per_1k_tokens=0.0, last_updated=_PRICES_AS_OF
        ),
        "gemini-1.5-pro": ModelPricing(
            input_cost_per_1k_tokens=0.00125, output_cost_per_1k_tokens=0.005, last_updated=_PRICES_AS_OF
        ),
        "gemini-1.5-flash": ModelPricing(
            input_cost_per_1k_tokens=0.000075, output_cost_per_1k_tokens=0.0003, last_updated=_PRICES_AS_OF
        ),
        "gemini-pro": ModelPricing(
            input_cost_per_1k_tokens=0.0005, output_cost_per_1k_tokens=0.0015, last_updated=_PRICES_AS_OF
        ),
    }

    def extract_model(self, body: Any, url: str | None = None) -> str:
        if url:
            match = _MODEL_IN_URL.search(url)
            if match:
                return match.group(1)
        return super().extract_model(body, url)

    def extract_messages(self, body: Any) -> list[dict[str, str]]:
        if not isinstance(body, dict) or not isinstance(body.get("contents"), list):
            return []
        messages = []
        for content in body["contents"]:
            if not isinstance(content, dict):
                continue
            role = content.get("role", "user")
            parts = content.get("parts") if isinstance(content.get("parts"), list) else []
            texts = [text for text in (_part_text(part) for part in parts) if text]
            messages.append(
                {"role": "assistant" if role == "model" else str(role), "content": " ".join(texts)}
            )
        return messages

    def extract_system_instruction(self, body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        instruction = body.get("systemInstruction") or body.get("system_instruction")
        if isinstance(instruction, dict) and instruction.get("parts"):
            return _part_text(instruction["parts"][0]) or None
        return None

    def extract_token_usage(self, response_body: Any) -> TokenUsage | None:
        if not isinstance(response_body, dict):
            return None
        usage = response_body.get("usageMetadata") or response_body.get("usage")
        if not isinstance(usage, dict):
            return None
        return TokenUsage(
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )

    def extract_response_text(self, response_body: Any) -> str:
        if not isinstance(response_body, dict):
            return ""
        candidates = response_body.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part["text"] for part in parts if isinstance(part, dict) and part.get("text"))

    def parse_stream_chunk(self, line: str) -> dict[str, Any] | None:
        if line.startswith(SSE_DATA_PREFIX):
            return super().parse_stream_chunk(line)
        line = line.strip().strip(",[]")
        if not line:
            return None
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse google stream chunk ({len(line)} chars)")
            return None
        return parsed if isinstance(parsed, dict) else None

    def validate_request(self, body: Any) -> list[str]:
        if not isinstance(body, dict):
            return ["Request body must be a JSON object"]
        errors: list[str] = []
        contents = body.get("contents")
        if not isinstance(contents, list):
            errors.append("Missing or invalid field: contents")
        elif not contents:
            errors.append("Contents array cannot be empty")
        else:
            for i, content in enumerate(contents):
                role = content.get("role") if isinstance(content, dict) else None
                if role not in self.message_roles:
                    errors.append(f"Invalid role in content {i}: {role}")
        return errors

    def sanitize_request(self, body: Any) -> Any:
        # Gemini has no top-level messages; nothing else needs scrubbing here
        return dict(body) if isinstance(body, dict) else body

    def merge_stream_chunks(self, chunks: list[dict[str, Any]]) -> dict[str, Any]:
        merged: dict[str, Any] = {
            "candidates": [],
            "usageMetadata": {"promptTokenCount": 0, "candidatesTokenCount": 0, "totalTokenCount": 0},
        }
        for chunk in chunks:
            merge_gemini_chunk(merged, chunk)
        return merged


def merge_gemini_chunk(merged: dict[str, Any], chunk: dict[str, Any]) -> None:
    """Fold one Gemini stream chunk into ``merged`` in place.

    Candidates are matched by position and parts by position within the
    candidate; text fragments concatenate, other parts replace.
    """
    candidates = merged.setdefault("candidates", [])
    for i, candidate in enumerate(chunk.get("candidates") or []):
        if not isinstance(candidate, dict):
            continue
        while len(candidates) <= i:
            candidates.append({"index": len(candidates), "content": {"role": "model", "parts": []}})
        target = candidates[i]
        target_content = target.setdefault("content", {"role": "model", "parts": []})
        target_parts = target_content.setdefault("parts", [])

        for j, part in enumerate((candidate.get("content") or {}).get("parts") or []):
            if not isinstance(part, dict):
                continue
            while len(target_parts) <= j:
                target_parts.append({})
            existing = target_parts[j]
            if "text" in part:
                existing["text"] = (existing.get("text") or "") + (part.get("text") or "")
            else:
                existing.update(part)

        if candidate.get("finishReason"):
            target["finishReason"] = candidate["finishReason"]

    if isinstance(chunk.get("usageMetadata"), dict):
        merged["usageMetadata"] = dict(chunk["usageMetadata"])
