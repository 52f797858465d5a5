# src/agenttrace/config.py
"""
Tracer Configuration Model.

``TracerConfig`` is an immutable settings snapshot consumed by every tracing
component. Components keep their own reference to the snapshot they were
given; ``EventPipeline.update_config`` swaps a new snapshot into all of them
at once. Nothing mutates a snapshot in place.

Out-of-range numeric values are clamped rather than rejected, and redact
patterns that fail to compile are dropped with a warning, so a partially
bad configuration still yields a usable tracer.

Environment overrides:
    AGENT_TRACE_DIR                 output_dir
    AGENT_TRACE_MAX_SESSIONS        max_sessions_retained
    AGENT_TRACE_CLEANUP_DAYS        auto_cleanup_days
    AGENT_TRACE_CAPTURE_REQUESTS    capture_request_bodies ("true"/"false")
    AGENT_TRACE_CAPTURE_RESPONSES   capture_response_bodies ("true"/"false")
    AGENT_TRACE_MAX_BODY_SIZE       max_body_size (bytes)
    AGENT_TRACE_BATCH_SIZE          batch_size
    AGENT_TRACE_FLUSH_INTERVAL      flush_interval_ms
    AGENT_TRACE_MAX_MEMORY          max_memory_usage_mb
    AGENT_TRACE_SENSITIVE_HEADERS   comma-separated, appended to the defaults
    AGENT_TRACE_REDACT_PATTERNS     "||"-separated, appended to the defaults

Usage:
    >>> from agenttrace.config import load_config
    >>> config = load_config({"batch_size": 20})
    >>> config.batch_size
    20
    >>> config.with_updates(batch_size=500).batch_size  # clamped
    100
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_OUTPUT_DIR = ".agent-trace"

DEFAULT_SENSITIVE_HEADERS = [
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "set-cookie",
    "x-openai-key",
    "x-anthropic-key",
    "x-goog-api-key",
]

DEFAULT_REDACT_PATTERNS = [
    r"sk-[a-zA-Z0-9]{48}",  # OpenAI API keys
    r"sk-ant-[a-zA-Z0-9\-_]{95}",  # Anthropic API keys
    r"AIza[0-9A-Za-z\-_]{35}",  # Google API keys
    r"Bearer [a-zA-Z0-9\-_.~+/]+=*",  # Bearer tokens
    r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}",  # Email addresses
]

ENV_PREFIX = "AGENT_TRACE"

MIN_BODY_SIZE = 1024
MAX_BATCH_SIZE = 100
MIN_FLUSH_INTERVAL_MS = 100
MIN_MEMORY_USAGE_MB = 10


def _parse_bool(value: str) -> bool:
    return value.strip().lower() == "true"


# env var suffix -> (field name, parser)
_ENV_MAPPINGS: dict[str, tuple[str, Any]] = {
    "DIR": ("output_dir", str),
    "MAX_SESSIONS": ("max_sessions_retained", int),
    "CLEANUP_DAYS": ("auto_cleanup_days", int),
    "CAPTURE_REQUESTS": ("capture_request_bodies", _parse_bool),
    "CAPTURE_RESPONSES": ("capture_response_bodies", _parse_bool),
    "MAX_BODY_SIZE": ("max_body_size", int),
    "BATCH_SIZE": ("batch_size", int),
    "FLUSH_INTERVAL": ("flush_interval_ms", int),
    "MAX_MEMORY": ("max_memory_usage_mb", int),
}


# =============================================================================
# CONFIG MODEL
# =============================================================================


class TracerConfig(BaseModel):
    """Resolved, immutable tracer settings."""

    model_config = ConfigDict(frozen=True)

    output_dir: str = Field(default=DEFAULT_OUTPUT_DIR, description="Base directory for trace output")
    max_sessions_retained: int = Field(
        default=50, description="Maximum sessions held in memory before the oldest is evicted"
    )
    auto_cleanup_days: int = Field(
        default=30, description="Session files older than this many days are deleted by cleanup"
    )
    capture_request_bodies: bool = Field(default=True, description="Record request bodies")
    capture_response_bodies: bool = Field(default=True, description="Record response bodies")
    max_body_size: int = Field(
        default=1024 * 1024, description="Maximum size in bytes of one serialized event line"
    )
    sensitive_headers: tuple[str, ...] = Field(
        default=tuple(DEFAULT_SENSITIVE_HEADERS),
        description="Field names whose values are always redacted (substring match)",
    )
    redact_patterns: tuple[str, ...] = Field(
        default=tuple(DEFAULT_REDACT_PATTERNS),
        description="Regular expressions whose matches are redacted from every string value",
    )
    batch_size: int = Field(default=10, description="Queue length that triggers an immediate flush")
    flush_interval_ms: int = Field(default=1000, description="Timer-driven flush interval")
    max_memory_usage_mb: int = Field(default=50, description="Soft memory budget for queued events")

    @field_validator("max_sessions_retained")
    @classmethod
    def clamp_max_sessions(cls, v: int) -> int:
        return max(1, v)

    @field_validator("auto_cleanup_days")
    @classmethod
    def clamp_cleanup_days(cls, v: int) -> int:
        return max(0, v)

    @field_validator("max_body_size")
    @classmethod
    def clamp_body_size(cls, v: int) -> int:
        return max(MIN_BODY_SIZE, v)

    @field_validator("batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        return max(1, min(MAX_BATCH_SIZE, v))

    @field_validator("flush_interval_ms")
    @classmethod
    def clamp_flush_interval(cls, v: int) -> int:
        return max(MIN_FLUSH_INTERVAL_MS, v)

    @field_validator("max_memory_usage_mb")
    @classmethod
    def clamp_memory(cls, v: int) -> int:
        return max(MIN_MEMORY_USAGE_MB, v)

    @field_validator("sensitive_headers", mode="before")
    @classmethod
    def normalize_headers(cls, v: Any) -> tuple[str, ...]:
        if isinstance(v, str):
            v = [v]
        headers = []
        for header in v or []:
            if not isinstance(header, str):
                continue
            header = header.strip().lower()
            if header and header not in headers:
                headers.append(header)
        return tuple(headers)

    @field_validator("redact_patterns", mode="before")
    @classmethod
    def drop_invalid_patterns(cls, v: Any) -> tuple[str, ...]:
        if isinstance(v, str):
            v = [v]
        patterns = []
        for pattern in v or []:
            if not isinstance(pattern, str) or not pattern:
                continue
            try:
                re.compile(pattern)
            except re.error as e:
                logger.warning(f"Dropping invalid redact pattern {pattern!r}: {e}")
                continue
            if pattern not in patterns:
                patterns.append(pattern)
        return tuple(patterns)

    @property
    def output_path(self) -> Path:
        """Expanded base output directory."""
        return Path(self.output_dir).expanduser()

    @property
    def sessions_path(self) -> Path:
        return self.output_path / "sessions"

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000.0

    def with_updates(self, **changes: Any) -> TracerConfig:
        """Return a new validated snapshot with ``changes`` applied.

        Raises:
            ConfigError: If the merged settings fail validation.
        """
        return build_config({**self.model_dump(), **changes})


# =============================================================================
# LOADING
# =============================================================================


def build_config(values: Mapping[str, Any] | None = None) -> TracerConfig:
    """Validate ``values`` into a ``TracerConfig``, raising ``ConfigError`` on failure."""
    try:
        return TracerConfig.model_validate(dict(values or {}))
    except ValidationError as e:
        raise ConfigError(f"Invalid tracer configuration: {e}") from e


def _env_overrides(
    environ: Mapping[str, str], base: Mapping[str, Any]
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    for suffix, (field_name, parser) in _ENV_MAPPINGS.items():
        env_var = f"{ENV_PREFIX}_{suffix}"
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            continue
        try:
            overrides[field_name] = parser(raw.strip())
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_var}: {raw!r}")

    headers_env = environ.get(f"{ENV_PREFIX}_SENSITIVE_HEADERS")
    if headers_env:
        extra = [h.strip().lower() for h in headers_env.split(",")]
        overrides["sensitive_headers"] = [*base.get("sensitive_headers", ()), *extra]

    patterns_env = environ.get(f"{ENV_PREFIX}_REDACT_PATTERNS")
    if patterns_env:
        extra = [p.strip() for p in patterns_env.split("||")]
        overrides["redact_patterns"] = [*base.get("redact_patterns", ()), *extra]

    return overrides


def load_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TracerConfig:
    """Resolve a config from defaults, explicit overrides and the environment.

    Environment variables take precedence over ``overrides``; list-valued
    variables extend the list rather than replacing it.

    Args:
        overrides: Values supplied by the caller (e.g. a parsed config file).
        environ: Environment mapping; defaults to ``os.environ``.

    Raises:
        ConfigError: If the resolved values fail validation.
    """
    environ = os.environ if environ is None else environ
    base = build_config(overrides).model_dump()
    base.update(_env_overrides(environ, base))
    config = build_config(base)
    logger.debug(
        f"Tracer config resolved: output_dir={config.output_dir}, "
        f"batch_size={config.batch_size}, flush_interval_ms={config.flush_interval_ms}"
    )
    return config


def is_tracing_enabled(environ: Mapping[str, str] | None = None) -> bool:
    """Whether ``AGENT_TRACE`` switches tracing on for this process."""
    environ = os.environ if environ is None else environ
    value = environ.get(ENV_PREFIX)
    return value is not None and value.lower() != "false" and value != "0"


def session_id_from_env(environ: Mapping[str, str] | None = None) -> str | None:
    """Session ID handed down by a wrapping process, if any."""
    environ = os.environ if environ is None else environ
    return environ.get(f"{ENV_PREFIX}_SESSION_ID") or None
