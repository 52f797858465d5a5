# src/agenttrace/__init__.py
"""
agenttrace - Tracing pipeline for a coding agent's AI provider calls.

Captures requests, responses (including reconstructed streams), tool runs
and errors as redacted, size-bounded JSON Lines, one append-only file per
session, with per-session token and cost accounting.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agenttrace")
except PackageNotFoundError:
    __version__ = "0.1.0"

from .config import TracerConfig, is_tracing_enabled, load_config, session_id_from_env
from .exceptions import (
    AgentTraceError,
    CommandRejectedError,
    ConfigError,
    EventValidationError,
    PipelineShutdownError,
    SerializationError,
    SessionError,
    SessionFileNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    SizeExceededError,
    StorageError,
    StreamingError,
)
from .models import (
    CostCalculation,
    EventType,
    ModelPricing,
    OperationResult,
    Session,
    SessionMetrics,
    SessionStatus,
    SessionSummary,
    TokenUsage,
)
from .observability import CostCalculator, TokenTracker, TrackedUsage
from .providers import ProviderManager
from .sessions import SessionRegistry
from .storage import SessionLogStore
from .tools import BashTracer, ToolExecutionTracer
from .tracing import EventSerializer, EventValidator, StreamingReconstructor
from .tracing.interceptor import TracingTransport
from .tracing.pipeline import BatchLogResult, EventPipeline

__all__ = [
    # Configuration
    "TracerConfig",
    "is_tracing_enabled",
    "load_config",
    "session_id_from_env",
    # Core components
    "EventPipeline",
    "BatchLogResult",
    "SessionRegistry",
    "SessionLogStore",
    "EventValidator",
    "EventSerializer",
    "StreamingReconstructor",
    "TracingTransport",
    "ProviderManager",
    "CostCalculator",
    "TokenTracker",
    "TrackedUsage",
    "ToolExecutionTracer",
    "BashTracer",
    # Models
    "CostCalculation",
    "EventType",
    "ModelPricing",
    "OperationResult",
    "Session",
    "SessionMetrics",
    "SessionStatus",
    "SessionSummary",
    "TokenUsage",
    # Exceptions
    "AgentTraceError",
    "CommandRejectedError",
    "ConfigError",
    "EventValidationError",
    "PipelineShutdownError",
    "SerializationError",
    "SessionError",
    "SessionFileNotFoundError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "SizeExceededError",
    "StorageError",
    "StreamingError",
    "__version__",
]
