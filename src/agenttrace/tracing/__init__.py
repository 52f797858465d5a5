# src/agenttrace/tracing/__init__.py
"""
Event handling for agenttrace: validation and redaction, JSONL encoding
and streamed-response reconstruction.

The pipeline and the httpx transport live in ``agenttrace.tracing.pipeline``
and ``agenttrace.tracing.interceptor`` and are exported from the top-level
package.
"""

from .serialization import EventSerializer, JSONLValidationResult, stable_dumps
from .streaming import StreamCapture, StreamingReconstructor, StreamState, merge_stream_chunk
from .validation import EventValidator, ValidationResult

__all__ = [
    "EventSerializer",
    "EventValidator",
    "JSONLValidationResult",
    "StreamCapture",
    "StreamState",
    "StreamingReconstructor",
    "ValidationResult",
    "merge_stream_chunk",
    "stable_dumps",
]
