# src/agenttrace/tracing/serialization.py
"""
JSON Lines encoding of trace events.

Every event becomes exactly one line of key-sorted, compact JSON, so the
same event always yields byte-identical output. Before encoding, the event
is copied with cycles replaced by ``"[Circular Reference]"`` and its
timestamp rounded to whole milliseconds.

Lines are bounded by ``TracerConfig.max_body_size`` (UTF-8 bytes). An
oversized event is truncated once: arrays longer than 100 items keep their
first 100 plus a ``"[... truncated array]"`` marker, and strings whose
UTF-8 encoding exceeds ``max_body_size // 4`` bytes are cut on a character
boundary with a ``"...[truncated]"`` suffix. If the result is still over
the limit, serialization fails with ``SizeExceededError``; it never emits
an oversized line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..config import TracerConfig
from ..exceptions import SerializationError, SizeExceededError
from ..models import OperationResult
from .validation import CIRCULAR_REFERENCE_MARKER

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("type", "timestamp", "session_id")

MAX_ARRAY_ITEMS = 100
ARRAY_TRUNCATION_MARKER = "[... truncated array]"
STRING_TRUNCATION_SUFFIX = "...[truncated]"


@dataclass
class JSONLValidationResult:
    """Outcome of checking a whole JSONL document."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    line_count: int = 0


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def stable_dumps(value: Any) -> str:
    """Key-sorted compact JSON; raises ``SerializationError`` for unencodable input."""
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_json_default,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Event is not JSON-encodable: {e}") from e


class EventSerializer:
    """Encodes events to bounded JSON lines and parses them back."""

    def __init__(self, config: TracerConfig):
        self._config = config

    @property
    def config(self) -> TracerConfig:
        return self._config

    def update_config(self, config: TracerConfig) -> None:
        self._config = config

    def serialize(self, event: Any) -> OperationResult[str]:
        """Encode one event as a JSON line (without the trailing newline)."""
        limit = self._config.max_body_size
        try:
            prepared = self._prepare(event, set())
            if isinstance(prepared, dict) and isinstance(prepared.get("timestamp"), float):
                prepared["timestamp"] = round(prepared["timestamp"])
            line = stable_dumps(prepared)

            size = len(line.encode("utf-8"))
            if size <= limit:
                return OperationResult.ok(line)

            line = stable_dumps(self._truncate(prepared, limit // 4))
            truncated_size = len(line.encode("utf-8"))
            if truncated_size > limit:
                raise SizeExceededError(size=truncated_size, limit=limit)
            logger.debug(f"Event truncated from {size} to {truncated_size} bytes")
            return OperationResult.ok(line, warnings=[f"Event truncated from {size} to {truncated_size} bytes"])
        except SerializationError as e:
            return OperationResult.fail(e)

    def serialize_batch(self, events: list[Any]) -> OperationResult[str]:
        """Encode several events as newline-joined lines; fails on the first bad event."""
        lines = []
        warnings: list[str] = []
        for index, event in enumerate(events):
            result = self.serialize(event)
            if not result.success:
                return OperationResult.fail(
                    SerializationError(f"Failed to serialize event {index} in batch: {result.error}")
                )
            lines.append(result.data)
            warnings.extend(result.warnings)
        return OperationResult.ok("\n".join(lines), warnings=warnings)

    def deserialize(self, line: str) -> OperationResult[dict[str, Any]]:
        """Parse one JSON line, requiring the ``type``/``timestamp``/``session_id`` envelope."""
        try:
            return OperationResult.ok(self._parse_line(line))
        except SerializationError as e:
            return OperationResult.fail(e)

    def deserialize_batch(self, content: str) -> list[OperationResult[dict[str, Any]]]:
        if not isinstance(content, str) or not content.strip():
            return [OperationResult.fail(SerializationError("Content must be a non-empty string"))]
        return [self.deserialize(line) for line in content.split("\n") if line.strip()]

    def validate_jsonl(self, content: str) -> JSONLValidationResult:
        """Check every non-blank line of a JSONL document; errors carry 1-based line numbers."""
        errors: list[str] = []
        line_count = 0
        for number, line in enumerate(content.split("\n"), start=1):
            if not line.strip():
                continue
            line_count += 1
            try:
                self._parse_line(line)
            except SerializationError as e:
                errors.append(f"Line {number}: {e}")
        return JSONLValidationResult(is_valid=not errors, errors=errors, line_count=line_count)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _parse_line(self, line: str) -> dict[str, Any]:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Invalid JSON - {e.msg}") from e
        if not isinstance(parsed, dict):
            raise SerializationError("Event must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if name not in parsed]
        if missing:
            raise SerializationError(f"Missing required fields: {', '.join(missing)}")
        return parsed

    def _prepare(self, value: Any, ancestors: set[int]) -> Any:
        """Plain-data copy of ``value`` with cycles replaced by a marker."""
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        if not isinstance(value, (dict, list, tuple)):
            return value

        marker = id(value)
        if marker in ancestors:
            return CIRCULAR_REFERENCE_MARKER
        ancestors.add(marker)
        try:
            if isinstance(value, dict):
                return {str(key): self._prepare(item, ancestors) for key, item in value.items()}
            return [self._prepare(item, ancestors) for item in value]
        finally:
            ancestors.discard(marker)

    def _truncate(self, value: Any, max_string_bytes: int) -> Any:
        if isinstance(value, str):
            encoded = value.encode("utf-8")
            if len(encoded) > max_string_bytes:
                # Cut on a character boundary
                return encoded[:max_string_bytes].decode("utf-8", errors="ignore") + STRING_TRUNCATION_SUFFIX
            return value
        if isinstance(value, dict):
            return {key: self._truncate(item, max_string_bytes) for key, item in value.items()}
        if isinstance(value, list):
            items = [self._truncate(item, max_string_bytes) for item in value[:MAX_ARRAY_ITEMS]]
            if len(value) > MAX_ARRAY_ITEMS:
                items.append(ARRAY_TRUNCATION_MARKER)
            return items
        return value
