# src/agenttrace/tools/sanitizer.py
"""
Scrubbing of tool and shell output before it is logged.

The pipeline's validator already masks sensitive keys and secret-shaped
tokens. Command output is free text, so credentials show up there as
``password=...`` assignments, private key blocks or URLs with embedded
userinfo; those shapes are handled here.
"""

from __future__ import annotations

import re
from typing import Any

from ..tracing.validation import REDACTION_MARKER

DEFAULT_MAX_OUTPUT_SIZE = 10 * 1024 * 1024

# (pattern, replacement) pairs applied in order
OUTPUT_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"-----BEGIN [A-Z ]+ KEY-----[\s\S]*?-----END [A-Z ]+ KEY-----"),
        REDACTION_MARKER,
    ),
    (re.compile(r"(?i)((?:password|passwd|pwd)['\":\s=]+)[^\s'\"]+"), rf"\1{REDACTION_MARKER}"),
    (re.compile(r"(?i)((?:api[_-]?key|apikey)['\":\s=]+)[^\s'\"]+"), rf"\1{REDACTION_MARKER}"),
    (re.compile(r"(?i)((?:secret|token)['\":\s=]+)[^\s'\"]+"), rf"\1{REDACTION_MARKER}"),
    (re.compile(r"(?i)(bearer\s+)[a-zA-Z0-9\-_.~+/]+=*"), rf"\1{REDACTION_MARKER}"),
    (re.compile(r"/(?:Users|home)/[^/\s]+/\.(?:ssh|aws)/\S+"), REDACTION_MARKER),
    (re.compile(r"(https?://)[^:/\s@]+:[^@\s]+@"), rf"\1{REDACTION_MARKER}@"),
]


def truncate_output(text: str, max_size: int = DEFAULT_MAX_OUTPUT_SIZE) -> str:
    if len(text) <= max_size:
        return text
    return text[: max(0, max_size - 100)] + f"\n\n... [OUTPUT TRUNCATED - Total size: {len(text)} chars] ..."


def sanitize_output(text: str | None, max_size: int = DEFAULT_MAX_OUTPUT_SIZE) -> str:
    """Mask credential shapes in free text, then bound its length."""
    if not text:
        return ""
    for pattern, replacement in OUTPUT_SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return truncate_output(text, max_size)


def sanitize_value(value: Any, max_size: int = DEFAULT_MAX_OUTPUT_SIZE) -> Any:
    """``sanitize_output`` applied to every string inside a JSON-like value.

    Containers already being visited are returned as-is; the serializer
    marks the cycle later.
    """
    return _sanitize(value, max_size, set())


def _sanitize(value: Any, max_size: int, ancestors: set[int]) -> Any:
    if isinstance(value, str):
        return sanitize_output(value, max_size)
    if not isinstance(value, (dict, list, tuple)) or id(value) in ancestors:
        return value
    ancestors.add(id(value))
    try:
        if isinstance(value, dict):
            return {key: _sanitize(item, max_size, ancestors) for key, item in value.items()}
        return [_sanitize(item, max_size, ancestors) for item in value]
    finally:
        ancestors.discard(id(value))
