# src/agenttrace/providers/base.py
"""
Abstract Base Class for AI provider adapters.

An adapter holds one vendor's knowledge of request, response and stream
shapes: how to recognise its URLs, where the model name and messages live
in a request body, where token usage lives in a response body, and its
static pricing table. Adapters hold no state; the tracing components call
them as lookup helpers.
"""

from __future__ import annotations

import abc
import json
import logging
import math
from collections.abc import Mapping
from typing import Any

from ..models import ModelPricing, TokenUsage

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE_SENTINEL = "[DONE]"

# Message contents longer than this are cut by sanitize_request
MAX_LOGGED_CONTENT_CHARS = 10000
CONTENT_TRUNCATION_SUFFIX = "... [truncated]"

# Characters per token used when no tokenizer-specific ratio applies
DEFAULT_CHARS_PER_TOKEN = 4.0


def header_value(headers: Mapping[str, Any] | None, name: str) -> str:
    """Case-insensitive header lookup returning '' when absent."""
    if not headers:
        return ""
    name = name.lower()
    for key, value in headers.items():
        if str(key).lower() == name:
            return str(value)
    return ""


class BaseProviderAdapter(abc.ABC):
    """
    Vendor-specific request/response knowledge.

    Subclasses declare ``name``, the hosts they serve, the content types
    their streams use and a static ``PRICING`` table keyed by model name.
    """

    name: str = ""
    api_hosts: tuple[str, ...] = ()
    stream_content_types: tuple[str, ...] = ("text/event-stream",)
    message_roles: tuple[str, ...] = ()
    PRICING: dict[str, ModelPricing] = {}

    def is_request_for(self, url: str) -> bool:
        """True if ``url`` targets one of this vendor's API hosts."""
        return any(host in url for host in self.api_hosts)

    def extract_model(self, body: Any, url: str | None = None) -> str:
        if isinstance(body, dict) and isinstance(body.get("model"), str) and body["model"]:
            return body["model"]
        return "unknown"

    @abc.abstractmethod
    def extract_messages(self, body: Any) -> list[dict[str, str]]:
        """Normalise the request's conversation to ``[{role, content}]`` with text content."""
        raise NotImplementedError

    @abc.abstractmethod
    def extract_token_usage(self, response_body: Any) -> TokenUsage | None:
        """Exact token usage reported by the vendor, or None if the body has none."""
        raise NotImplementedError

    @abc.abstractmethod
    def extract_response_text(self, response_body: Any) -> str:
        """Plain text generated in a (possibly merged) response body."""
        raise NotImplementedError

    @abc.abstractmethod
    def merge_stream_chunks(self, chunks: list[dict[str, Any]]) -> dict[str, Any]:
        """Fold a complete list of parsed stream chunks into one response body."""
        raise NotImplementedError

    def estimate_tokens(self, text: str, model: str | None = None) -> int:
        """Character-count token estimate for when exact usage is unavailable."""
        return math.ceil(len(text) / DEFAULT_CHARS_PER_TOKEN)

    def is_streaming_response(self, headers: Mapping[str, Any] | None) -> bool:
        content_type = header_value(headers, "content-type")
        return any(ct in content_type for ct in self.stream_content_types)

    def parse_stream_chunk(self, line: str) -> dict[str, Any] | None:
        """Parse one SSE ``data:`` line; None for other lines, the sentinel or bad JSON."""
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        data = line[len(SSE_DATA_PREFIX):].strip()
        if data == SSE_DONE_SENTINEL:
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse {self.name} stream chunk ({len(line)} chars)")
            return None
        return parsed if isinstance(parsed, dict) else None

    def validate_request(self, body: Any) -> list[str]:
        """Structural problems in a request body; an empty list means valid."""
        errors: list[str] = []
        if not isinstance(body, dict):
            return ["Request body must be a JSON object"]
        if not body.get("model"):
            errors.append("Missing required field: model")
        messages = body.get("messages")
        if not isinstance(messages, list):
            errors.append("Missing or invalid field: messages")
        elif not messages:
            errors.append("Messages array cannot be empty")
        else:
            for i, message in enumerate(messages):
                role = message.get("role") if isinstance(message, dict) else None
                if role not in self.message_roles:
                    errors.append(f"Invalid role in message {i}: {role}")
        return errors

    def sanitize_request(self, body: Any) -> Any:
        """Copy of ``body`` with over-long message contents cut down for logging."""
        if not isinstance(body, dict):
            return body
        sanitized = dict(body)
        if isinstance(sanitized.get("messages"), list):
            sanitized["messages"] = [self._truncate_message(m) for m in sanitized["messages"]]
        return sanitized

    def _truncate_message(self, message: Any) -> Any:
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            content = message["content"]
            if len(content) > MAX_LOGGED_CONTENT_CHARS:
                return {**message, "content": content[:MAX_LOGGED_CONTENT_CHARS] + CONTENT_TRUNCATION_SUFFIX}
        return message

    def get_pricing(self, model: str) -> ModelPricing | None:
        return self.PRICING.get(model)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
