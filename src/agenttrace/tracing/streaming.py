# src/agenttrace/tracing/streaming.py
"""
Streaming Reconstructor: tees a streamed provider response to its consumer
while folding its frames into one logical response.

Every byte chunk read from the origin is yielded to the consumer before any
parsing happens, so merge problems never delay or alter what the caller
sees. Bytes are decoded incrementally and split into lines; each line is
either an SSE ``data: <json>`` frame or a raw JSON line (Gemini's array
stream). ``data: [DONE]`` ends the logical stream. Malformed frames are
logged and skipped.

Frames merge by shape, not by which vendor was called:

- ``choices`` present: OpenAI deltas (content, function_call, tool_calls by index)
- Anthropic event types, or ``content``/``delta`` present: content blocks by index
- ``candidates`` present: Gemini candidates and parts by position
- anything else: shallow update, last write wins

Usage blocks are cumulative and overwrite the running value.

Each stream moves ``idle -> receiving -> complete | errored``. Completion
emits one ``ai_response`` event with the merged body; an origin failure
emits an ``ai_stream_error`` event and re-raises to the consumer.
"""

from __future__ import annotations

import codecs
import json
import logging
import uuid
from collections.abc import AsyncGenerator, AsyncIterable, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from ..exceptions import StreamingError
from ..models import EventType, OperationResult, now_ms
from ..providers.anthropic_provider import merge_anthropic_event
from ..providers.base import SSE_DONE_SENTINEL, header_value
from ..providers.gemini_provider import merge_gemini_chunk
from ..providers.openai_provider import merge_openai_choice

if TYPE_CHECKING:
    from ..observability.token_tracker import TokenTracker

logger = logging.getLogger(__name__)

STREAMING_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson", "text/plain")

ANTHROPIC_EVENT_TYPES = frozenset(
    {
        "message_start",
        "message_delta",
        "message_stop",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "ping",
    }
)

# Top-level OpenAI fields kept from the first chunk that carries them
_OPENAI_ENVELOPE_FIELDS = ("id", "created", "model", "system_fingerprint")

# SSE lines that carry no data
_SSE_FIELD_PREFIXES = ("event:", "id:", "retry:", ":")

EventSink = Callable[[dict[str, Any]], Awaitable[OperationResult]]


class ContentDecoder(Protocol):
    """Incremental decoder for a compressed body, as used by ``httpx``."""

    def decode(self, data: bytes) -> bytes: ...

    def flush(self) -> bytes: ...


class StreamState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    COMPLETE = "complete"
    ERRORED = "errored"


@dataclass
class StreamCapture:
    """Running state of one reconstructed stream."""

    stream_id: str
    provider: str
    model: str
    start_time: float
    request_body: Any = None
    state: StreamState = StreamState.IDLE
    merged: dict[str, Any] = field(default_factory=dict)
    total_chunks: int = 0
    end_time: float | None = None

    @property
    def is_finished(self) -> bool:
        return self.state in (StreamState.COMPLETE, StreamState.ERRORED)


def _is_anthropic_frame(chunk: Mapping[str, Any]) -> bool:
    if chunk.get("type") in ANTHROPIC_EVENT_TYPES:
        return True
    return any(key in chunk for key in ("content", "delta", "content_block"))


def merge_stream_chunk(merged: dict[str, Any], chunk: dict[str, Any]) -> None:
    """Fold one parsed frame into ``merged`` in place, dispatching on the frame's shape."""
    if isinstance(chunk.get("choices"), list):
        for key in _OPENAI_ENVELOPE_FIELDS:
            if key in chunk and key not in merged:
                merged[key] = chunk[key]
        merged["object"] = "chat.completion"
        choices = merged.setdefault("choices", [])
        for choice in chunk["choices"]:
            if isinstance(choice, dict):
                merge_openai_choice(choices, choice)
        if isinstance(chunk.get("usage"), dict):
            merged["usage"] = dict(chunk["usage"])
    elif _is_anthropic_frame(chunk):
        merge_anthropic_event(merged, chunk)
    elif isinstance(chunk.get("candidates"), list):
        merge_gemini_chunk(merged, chunk)
    else:
        merged.update(chunk)


class StreamingReconstructor:
    """
    Wraps streamed response bodies for one session.

    Args:
        log_event: Coroutine accepting an event dict, normally
            ``EventPipeline.log_event``.
        session_id: Session the emitted events belong to.
        token_tracker: When given, completed responses carry ``tokens_used``
            and ``cost``.
        capture_intermediate_chunks: Also emit one ``ai_stream_chunk`` event per frame.
        clock: Returns the current time in epoch ms.
    """

    def __init__(
        self,
        log_event: EventSink,
        session_id: str,
        token_tracker: TokenTracker | None = None,
        capture_intermediate_chunks: bool = False,
        clock: Callable[[], float] = now_ms,
    ):
        self._log_event = log_event
        self._session_id = session_id
        self._token_tracker = token_tracker
        self._capture_intermediate_chunks = capture_intermediate_chunks
        self._clock = clock
        self._streams: dict[str, StreamCapture] = {}
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @staticmethod
    def is_streaming_response(headers: Mapping[str, Any] | None) -> bool:
        content_type = header_value(headers, "content-type").lower()
        return any(ct in content_type for ct in STREAMING_CONTENT_TYPES)

    # -------------------------------------------------------------------------
    # Stream wrapping
    # -------------------------------------------------------------------------

    async def wrap(
        self,
        body: AsyncIterable[bytes],
        provider: str,
        model: str,
        start_time: float | None = None,
        request_body: Any = None,
        content_decoder: ContentDecoder | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Yield ``body`` unchanged while reconstructing it.

        ``content_decoder`` undoes a ``content-encoding`` before parsing; the
        consumer still receives the bytes as read. A body that fails to
        decode stops reconstruction but never the consumer's stream.

        Raises:
            StreamingError: The reconstructor was already cleaned up.
        """
        if self._closed:
            raise StreamingError(message="Reconstructor has been cleaned up.")

        capture = StreamCapture(
            stream_id=f"stream_{uuid.uuid4().hex}",
            provider=provider,
            model=model,
            start_time=start_time if start_time is not None else self._clock(),
            request_body=request_body,
        )
        self._streams[capture.stream_id] = capture
        logger.debug(f"Stream {capture.stream_id} opened ({provider}/{model})")

        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        parsing = True
        try:
            async for data in body:
                yield data
                if not parsing:
                    continue
                decoded = self._decode_content(capture, content_decoder, data)
                if decoded is None:
                    parsing = False
                    continue
                buffer += text_decoder.decode(decoded)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    await self._process_line(capture, line)
            if parsing:
                tail = self._decode_content(capture, content_decoder, None) or b""
                buffer += text_decoder.decode(tail, final=True)
                for line in buffer.split("\n"):
                    await self._process_line(capture, line)
        except Exception as e:
            if not capture.is_finished:
                await self._fail(capture, e)
            raise
        if not capture.is_finished:
            await self._complete(capture)

    @staticmethod
    def _decode_content(
        capture: StreamCapture, content_decoder: ContentDecoder | None, data: bytes | None
    ) -> bytes | None:
        """Decoded bytes of ``data``, or the decoder's remainder when ``data`` is None; None on failure."""
        if content_decoder is None:
            return data if data is not None else b""
        try:
            return content_decoder.decode(data) if data is not None else content_decoder.flush()
        except Exception as e:
            logger.warning(f"Stream {capture.stream_id} body could not be decoded; reconstruction stopped: {e}")
            return None

    async def _process_line(self, capture: StreamCapture, line: str) -> None:
        line = line.strip()
        if not line or capture.is_finished:
            return
        if line.startswith("data:"):
            payload = line[len("data:"):].strip()
        elif line.startswith(_SSE_FIELD_PREFIXES):
            return
        else:
            payload = line.strip(",[]")
            if not payload:
                return

        if payload == SSE_DONE_SENTINEL:
            await self._complete(capture)
            return

        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed frame in stream {capture.stream_id} ({len(payload)} chars)")
            return
        if not isinstance(chunk, dict):
            logger.warning(f"Skipping non-object frame in stream {capture.stream_id}")
            return

        try:
            merge_stream_chunk(capture.merged, chunk)
        except Exception as e:
            logger.warning(f"Could not merge frame {capture.total_chunks} of stream {capture.stream_id}: {e}")
            return

        chunk_index = capture.total_chunks
        capture.total_chunks += 1
        capture.state = StreamState.RECEIVING

        if self._capture_intermediate_chunks:
            await self._emit(
                {
                    "type": EventType.AI_STREAM_CHUNK.value,
                    "timestamp": self._clock(),
                    "session_id": self._session_id,
                    "stream_id": capture.stream_id,
                    "chunk_index": chunk_index,
                    "provider": capture.provider,
                    "model": capture.model,
                    "data": chunk,
                }
            )

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    async def _complete(self, capture: StreamCapture) -> None:
        capture.end_time = self._clock()
        capture.state = StreamState.COMPLETE
        self._streams.pop(capture.stream_id, None)

        duration = max(0, capture.end_time - capture.start_time)
        model = capture.model
        if model == "unknown" and isinstance(capture.merged.get("model"), str) and capture.merged["model"]:
            model = capture.merged["model"]

        event: dict[str, Any] = {
            "type": EventType.AI_RESPONSE.value,
            "timestamp": capture.end_time,
            "session_id": self._session_id,
            "provider": capture.provider,
            "model": model,
            "response": {
                **capture.merged,
                "_streaming": True,
                "_stream_id": capture.stream_id,
                "_total_chunks": capture.total_chunks,
                "_stream_duration": duration,
            },
            "stream_id": capture.stream_id,
            "total_chunks": capture.total_chunks,
            "stream_duration": duration,
            "timing": {"start": capture.start_time, "end": capture.end_time, "duration": duration},
        }
        if self._token_tracker is not None:
            tracked = self._token_tracker.track(capture.provider, model, capture.request_body, capture.merged)
            event["tokens_used"] = tracked.usage.model_dump()
            if tracked.cost is not None:
                event["cost"] = tracked.cost.total_cost

        logger.debug(f"Stream {capture.stream_id} complete: {capture.total_chunks} chunk(s) in {duration}ms")
        await self._emit(event)

    async def _fail(self, capture: StreamCapture, error: BaseException) -> None:
        capture.end_time = self._clock()
        capture.state = StreamState.ERRORED
        self._streams.pop(capture.stream_id, None)
        logger.error(f"Stream {capture.stream_id} failed after {capture.total_chunks} chunk(s): {error}")
        await self._emit(
            {
                "type": EventType.AI_STREAM_ERROR.value,
                "timestamp": capture.end_time,
                "session_id": self._session_id,
                "stream_id": capture.stream_id,
                "provider": capture.provider,
                "model": capture.model,
                "error": str(error) or type(error).__name__,
                "chunks_processed": capture.total_chunks,
            }
        )

    async def _emit(self, event: dict[str, Any]) -> None:
        try:
            result = await self._log_event(event)
        except Exception as e:
            logger.error(f"Failed to log {event['type']} event: {e}", exc_info=True)
            return
        if result is not None and not result.success:
            logger.warning(f"{event['type']} event rejected: {result.error}")

    # -------------------------------------------------------------------------
    # Introspection and teardown
    # -------------------------------------------------------------------------

    def get_active_streams(self) -> list[str]:
        return list(self._streams)

    def get_stream_status(self, stream_id: str) -> StreamCapture | None:
        return self._streams.get(stream_id)

    async def cleanup(self) -> None:
        """Emit the partial response of every stream still open and stop accepting new ones."""
        self._closed = True
        for capture in list(self._streams.values()):
            await self._complete(capture)
        self._streams.clear()
