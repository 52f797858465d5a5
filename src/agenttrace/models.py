# src/agenttrace/models.py
"""
Core data models for agenttrace.

This module defines the shapes that flow through the tracing pipeline:

- ``TraceEvent`` variants: one pydantic model per event ``type``, all sharing
  the ``{type, timestamp, session_id}`` envelope. Unknown fields are kept
  (``extra="allow"``) so provider payloads survive validation untouched.
  Types outside the closed set must use the ``custom_`` prefix.
- ``Session`` / ``SessionMetrics`` / ``SessionSummary``: registry state and
  the summary emitted when a session ends.
- ``TokenUsage``, ``ModelPricing``, ``CostCalculation``: accounting records.
- ``OperationResult``: the success/data/error envelope returned by every
  public operation instead of raising.

Events travel through the pipeline as plain dictionaries; the models here
are used to validate them and to describe them, not to carry them.

Timestamps are epoch milliseconds throughout, matching the on-disk format.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Generic, Literal, TypeVar
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# CONSTANTS
# =============================================================================

CUSTOM_EVENT_PREFIX = "custom_"

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})

# Tool names counted as file operations in session metrics
FILE_OPERATION_TOOLS = frozenset({"read", "write", "edit"})

StrictNonEmptyStr = Annotated[str, Field(strict=True, min_length=1)]
StrictOptionalStr = Annotated[str | None, Field(strict=True)]
NonNegativeNumber = Annotated[float, Field(strict=True, ge=0)]
NonNegativeInt = Annotated[int, Field(strict=True, ge=0)]


# =============================================================================
# ENUMS
# =============================================================================


class EventType(str, Enum):
    """Event types in the closed variant set."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    AI_REQUEST = "ai_request"
    AI_RESPONSE = "ai_response"
    AI_STREAM_CHUNK = "ai_stream_chunk"
    AI_STREAM_ERROR = "ai_stream_error"
    TOOL_EXECUTION = "tool_execution"
    FILE_OPERATION = "file_operation"
    BASH_COMMAND = "bash_command"
    TOOL_RESULT = "tool_result"
    NETWORK_REQUEST = "network_request"
    NETWORK_RESPONSE = "network_response"
    WEBSOCKET_CONNECTION = "websocket_connection"
    WEBSOCKET_MESSAGE = "websocket_message"
    WEBSOCKET_ERROR = "websocket_error"
    ERROR = "error"


class SessionStatus(str, Enum):
    """Lifecycle states of a traced session. Only ACTIVE is non-terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


# =============================================================================
# RESULT ENVELOPE
# =============================================================================


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a public operation.

    ``error`` holds the exception describing a failure; ``warnings`` lists
    non-fatal problems attached to an otherwise successful result.
    """

    success: bool
    data: T | None = None
    error: Exception | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: T | None = None, warnings: list[str] | None = None) -> OperationResult[T]:
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: Exception, data: T | None = None) -> OperationResult[T]:
        return cls(success=False, data=data, error=error)


# =============================================================================
# SHARED VALUE MODELS
# =============================================================================


class TokenUsage(BaseModel):
    """Input/output token counts for one call, or running totals."""

    input_tokens: NonNegativeInt
    output_tokens: NonNegativeInt

    @classmethod
    def zero(cls) -> TokenUsage:
        return cls(input_tokens=0, output_tokens=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class RequestTiming(BaseModel):
    """Start/end timestamps (epoch ms) and duration of an operation."""

    model_config = ConfigDict(extra="allow")

    start: float | None = None
    end: float | None = None
    duration: NonNegativeNumber


class ModelPricing(BaseModel):
    """Per-1k-token prices for one model."""

    input_cost_per_1k_tokens: float = Field(ge=0)
    output_cost_per_1k_tokens: float = Field(ge=0)
    currency: str = "USD"
    last_updated: str = Field(description="ISO date the price was last verified, e.g. 2024-12-26")


class CostCalculation(BaseModel):
    """Cost of one call, rounded to 5 decimal places."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = "USD"


# =============================================================================
# SESSION MODELS
# =============================================================================


class SessionMetrics(BaseModel):
    """Live counters folded from the events logged against a session."""

    total_requests: int = 0
    ai_requests: int = 0
    file_operations: int = 0
    tool_executions: int = 0
    network_requests: int = 0
    total_cost: float = 0.0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage.zero)
    error_count: int = 0
    last_activity_time: float = Field(default_factory=now_ms)


class SessionSummary(BaseModel):
    """Final figures reported when a session ends."""

    model_config = ConfigDict(extra="allow")

    total_requests: NonNegativeInt
    ai_requests: NonNegativeInt
    total_cost: NonNegativeNumber
    file_operations: NonNegativeInt = 0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage.zero)
    duration_ms: NonNegativeNumber = 0
    error_count: NonNegativeInt = 0


class Session(BaseModel):
    """In-memory record of one traced run. Owned by the session registry."""

    id: str
    start_time: float
    user_query: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    status: SessionStatus = SessionStatus.ACTIVE
    file_path: str | None = None
    event_count: int = 0
    last_flush_time: float | None = None
    end_time: float | None = None
    error: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


# =============================================================================
# EVENT VARIANTS
# =============================================================================


class TraceEventBase(BaseModel):
    """Envelope shared by every event."""

    model_config = ConfigDict(extra="allow")

    type: StrictNonEmptyStr
    timestamp: Annotated[float, Field(strict=True, gt=0)]
    session_id: StrictNonEmptyStr


class SessionStartEvent(TraceEventBase):
    type: Literal["session_start"]
    user_query: StrictNonEmptyStr
    agent_version: StrictNonEmptyStr
    working_directory: StrictNonEmptyStr


class SessionEndEvent(TraceEventBase):
    type: Literal["session_end"]
    duration: NonNegativeNumber | None = None
    summary: SessionSummary | None = None


class AIRequestEvent(TraceEventBase):
    type: Literal["ai_request"]
    provider: StrictNonEmptyStr
    model: StrictNonEmptyStr
    messages: Annotated[list[Any], Field(strict=True)]
    url: StrictOptionalStr = None
    headers: dict[str, Any] | None = None


class AIResponseEvent(TraceEventBase):
    type: Literal["ai_response"]
    provider: StrictNonEmptyStr
    model: StrictNonEmptyStr
    cost: NonNegativeNumber | None = None
    tokens_used: TokenUsage | None = None
    response: Any = None


class StreamChunkEvent(TraceEventBase):
    type: Literal["ai_stream_chunk"]
    stream_id: StrictNonEmptyStr
    chunk_index: NonNegativeInt
    provider: StrictNonEmptyStr
    model: StrictNonEmptyStr
    data: Any = None


class StreamErrorEvent(TraceEventBase):
    type: Literal["ai_stream_error"]
    stream_id: StrictNonEmptyStr
    provider: StrictNonEmptyStr
    model: StrictNonEmptyStr
    error: Annotated[str, Field(strict=True)]
    chunks_processed: NonNegativeInt


class ToolExecutionEvent(TraceEventBase):
    type: Literal["tool_execution"]
    tool_name: StrictNonEmptyStr
    success: Annotated[bool, Field(strict=True)]
    parameters: Any = None
    result: Any = None
    timing: RequestTiming | None = None
    error: StrictOptionalStr = None


class FileOperationEvent(TraceEventBase):
    type: Literal["file_operation"]
    operation: Literal["read", "write", "edit", "delete", "create", "move", "copy"]
    file_path: StrictNonEmptyStr
    success: Annotated[bool, Field(strict=True)]
    size: NonNegativeInt | None = None
    timing: RequestTiming | None = None


class BashCommandEvent(TraceEventBase):
    type: Literal["bash_command"]
    command: StrictNonEmptyStr
    working_directory: StrictNonEmptyStr
    exit_code: Annotated[int, Field(strict=True)]
    success: Annotated[bool, Field(strict=True)]
    timing: RequestTiming | None = None


class ToolResultEvent(TraceEventBase):
    type: Literal["tool_result"]
    tool_name: StrictNonEmptyStr
    size_bytes: NonNegativeInt
    processing_time: NonNegativeNumber
    success: Annotated[bool, Field(strict=True)]


class NetworkRequestEvent(TraceEventBase):
    type: Literal["network_request"]
    url: StrictNonEmptyStr
    method: StrictNonEmptyStr
    headers: dict[str, Any] | None = None
    body: Any = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"invalid URL format: {v}")
        return v

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v.upper() not in HTTP_METHODS:
            raise ValueError(f"invalid HTTP method: {v}")
        return v


class NetworkResponseEvent(TraceEventBase):
    type: Literal["network_response"]
    status: Annotated[int, Field(strict=True, ge=100, le=599)]
    headers: dict[str, Any] | None = None
    body: Any = None
    timing: RequestTiming | None = None


class WebSocketConnectionEvent(TraceEventBase):
    type: Literal["websocket_connection"]
    url: StrictNonEmptyStr
    state: Literal["connecting", "open", "closing", "closed"]
    protocols: list[str] | None = None
    timing: RequestTiming | None = None


class WebSocketMessageEvent(TraceEventBase):
    type: Literal["websocket_message"]
    direction: Literal["sent", "received"]
    message_type: Literal["text", "binary", "ping", "pong", "close"]
    size: NonNegativeInt
    data: Any = None


class WebSocketErrorEvent(TraceEventBase):
    type: Literal["websocket_error"]
    error: StrictNonEmptyStr
    code: int | None = None
    reason: StrictOptionalStr = None


class ErrorEvent(TraceEventBase):
    """In-band record of a logging failure, written to the affected session's own file."""

    type: Literal["error"]
    error: dict[str, Any] | str
    failed_events_count: NonNegativeInt | None = None


class CustomEvent(TraceEventBase):
    """Escape hatch for forward-compatible event kinds."""

    @field_validator("type")
    @classmethod
    def validate_custom_prefix(cls, v: str) -> str:
        if not v.startswith(CUSTOM_EVENT_PREFIX):
            raise ValueError(
                f"Unknown event type: {v}. Custom events should start with '{CUSTOM_EVENT_PREFIX}'"
            )
        return v


EVENT_MODELS: dict[str, type[TraceEventBase]] = {
    EventType.SESSION_START.value: SessionStartEvent,
    EventType.SESSION_END.value: SessionEndEvent,
    EventType.AI_REQUEST.value: AIRequestEvent,
    EventType.AI_RESPONSE.value: AIResponseEvent,
    EventType.AI_STREAM_CHUNK.value: StreamChunkEvent,
    EventType.AI_STREAM_ERROR.value: StreamErrorEvent,
    EventType.TOOL_EXECUTION.value: ToolExecutionEvent,
    EventType.FILE_OPERATION.value: FileOperationEvent,
    EventType.BASH_COMMAND.value: BashCommandEvent,
    EventType.TOOL_RESULT.value: ToolResultEvent,
    EventType.NETWORK_REQUEST.value: NetworkRequestEvent,
    EventType.NETWORK_RESPONSE.value: NetworkResponseEvent,
    EventType.WEBSOCKET_CONNECTION.value: WebSocketConnectionEvent,
    EventType.WEBSOCKET_MESSAGE.value: WebSocketMessageEvent,
    EventType.WEBSOCKET_ERROR.value: WebSocketErrorEvent,
    EventType.ERROR.value: ErrorEvent,
}


def event_model_for(event_type: Any) -> type[TraceEventBase]:
    """Resolve the variant model for an event ``type`` value.

    Unknown or non-string types resolve to ``CustomEvent``, whose prefix
    check rejects anything not starting with ``custom_``.
    """
    if isinstance(event_type, str) and event_type in EVENT_MODELS:
        return EVENT_MODELS[event_type]
    return CustomEvent
