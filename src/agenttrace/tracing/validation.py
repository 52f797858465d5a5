# src/agenttrace/tracing/validation.py
"""
Event validation and secret redaction.

``EventValidator.validate`` answers two questions about an event at once:

1. Is it well-formed? The event is checked against the pydantic model for
   its ``type`` (see ``agenttrace.models.EVENT_MODELS``), plus a timestamp
   plausibility window (no more than 2 hours old, no more than 1 hour in
   the future). Unknown types must start with ``custom_``.
2. What may be written to disk? A redacted deep copy is always produced,
   valid or not. Any mapping key that matches a configured sensitive
   header name (case-insensitive substring match in either direction) has
   its value replaced wholesale, and every string value has matches of the
   configured redact patterns replaced in place.

Redaction is a fixed point: redacting an already redacted event changes
nothing. Cycles in the input are replaced by ``"[Circular Reference]"``
instead of recursing forever.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ..config import TracerConfig
from ..models import event_model_for, now_ms

logger = logging.getLogger(__name__)

REDACTION_MARKER = "[REDACTED]"
CIRCULAR_REFERENCE_MARKER = "[Circular Reference]"

MAX_EVENT_AGE_MS = 2 * 60 * 60 * 1000
MAX_EVENT_FUTURE_MS = 60 * 60 * 1000


@dataclass
class ValidationResult:
    """Verdict for one event plus the redacted copy that may be persisted."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized_event: Any = None


def _format_validation_errors(event_type: Any, exc: ValidationError) -> list[str]:
    prefix = event_type if isinstance(event_type, str) and event_type else "event"
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        messages.append(f"{prefix}.{location}: {error['msg']}" if location else f"{prefix}: {error['msg']}")
    return messages


class EventValidator:
    """
    Validates events and produces redacted copies.

    Args:
        config: Snapshot supplying ``sensitive_headers`` and ``redact_patterns``.
        clock: Returns the current time in epoch ms; injectable for tests.
    """

    def __init__(self, config: TracerConfig, clock: Callable[[], float] = now_ms):
        self._clock = clock
        self.update_config(config)

    @property
    def config(self) -> TracerConfig:
        return self._config

    def update_config(self, config: TracerConfig) -> None:
        """Adopt a new snapshot, recompiling the redact patterns."""
        compiled = [re.compile(pattern, re.IGNORECASE) for pattern in config.redact_patterns]
        self._config = config
        self._sensitive_headers = tuple(config.sensitive_headers)
        self._patterns = compiled

    def validate(self, event: Any) -> ValidationResult:
        """Check ``event`` and return the verdict together with its redacted copy."""
        errors: list[str] = []

        if not isinstance(event, dict):
            errors.append("Event must be an object")
        else:
            event_type = event.get("type")
            model = event_model_for(event_type)
            try:
                model.model_validate(event)
            except ValidationError as e:
                errors.extend(_format_validation_errors(event_type, e))

            timestamp = event.get("timestamp")
            if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
                now = self._clock()
                if timestamp < now - MAX_EVENT_AGE_MS or timestamp > now + MAX_EVENT_FUTURE_MS:
                    errors.append(
                        "Event timestamp seems unrealistic (more than 2 hours old or 1 hour in future)"
                    )

        sanitized = self.redact(event)
        if errors:
            logger.debug(f"Event of type {event.get('type') if isinstance(event, dict) else None!r} "
                         f"failed validation with {len(errors)} error(s)")
        return ValidationResult(is_valid=not errors, errors=errors, sanitized_event=sanitized)

    # -------------------------------------------------------------------------
    # Redaction
    # -------------------------------------------------------------------------

    def is_sensitive_key(self, key: Any) -> bool:
        """Whether a mapping key names a sensitive field."""
        lowered = str(key).lower()
        return any(header in lowered or lowered in header for header in self._sensitive_headers)

    def redact_string(self, value: str) -> str:
        for pattern in self._patterns:
            value = pattern.sub(REDACTION_MARKER, value)
        return value

    def redact(self, value: Any) -> Any:
        """Deep copy of ``value`` with sensitive keys and secret-shaped substrings replaced."""
        return self._redact(value, set())

    def _redact(self, value: Any, ancestors: set[int]) -> Any:
        if isinstance(value, str):
            return self.redact_string(value)
        if not isinstance(value, (dict, list, tuple)):
            return value

        marker = id(value)
        if marker in ancestors:
            return CIRCULAR_REFERENCE_MARKER
        ancestors.add(marker)
        try:
            if isinstance(value, dict):
                return {
                    key: REDACTION_MARKER if self.is_sensitive_key(key) else self._redact(item, ancestors)
                    for key, item in value.items()
                }
            return [self._redact(item, ancestors) for item in value]
        finally:
            ancestors.discard(marker)
