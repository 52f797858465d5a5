# tests/tracing/test_streaming.py
"""Tests for StreamingReconstructor and frame merging across vendor stream shapes."""

import json
import logging
import zlib

import pytest

from agenttrace.exceptions import StreamingError
from agenttrace.models import OperationResult
from agenttrace.observability.token_tracker import TokenTracker
from agenttrace.tracing.streaming import StreamingReconstructor, StreamState, merge_stream_chunk


class RecordingSink:
    """Stands in for EventPipeline.log_event and keeps every event."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)
        return OperationResult.ok()

    def of_type(self, event_type):
        return [event for event in self.events if event["type"] == event_type]


class DeflateDecoder:
    """Minimal content decoder for raw deflate bodies."""

    def __init__(self):
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)

    def decode(self, data):
        return self._decompressor.decompress(data)

    def flush(self):
        return self._decompressor.flush()


class BrokenDecoder:
    def decode(self, data):
        raise ValueError("bad compressed data")

    def flush(self):
        return b""


async def _body(chunks, error=None):
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


def _sse(payload) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


def _openai_frames():
    return [
        _sse({"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}}]}),
        _sse({"id": "chatcmpl-1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}),
        _sse("[DONE]"),
    ]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def reconstructor(sink, clock):
    return StreamingReconstructor(sink, "s-1", clock=clock)


async def _consume(generator) -> list[bytes]:
    return [chunk async for chunk in generator]


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_deltas_concatenated(self, reconstructor, sink):
        frames = _openai_frames()
        received = await _consume(reconstructor.wrap(_body(frames), "openai", "gpt-4o"))

        assert received == frames
        [event] = sink.events
        assert event["type"] == "ai_response"
        assert event["session_id"] == "s-1"
        choice = event["response"]["choices"][0]
        assert choice["message"] == {"role": "assistant", "content": "Hello"}
        assert choice["finish_reason"] == "stop"
        assert event["response"]["_streaming"] is True
        assert event["total_chunks"] == 2
        assert event["stream_id"] == event["response"]["_stream_id"]

    @pytest.mark.asyncio
    async def test_frames_split_across_reads(self, reconstructor, sink):
        raw = b"".join(_sse({"choices": [{"index": 0, "delta": {"content": part}}]}) for part in ("hé", "llo"))
        split_at = raw.index("é".encode("utf-8")) + 1
        pieces = [raw[:7], raw[7:split_at], raw[split_at:]]

        received = await _consume(reconstructor.wrap(_body(pieces), "openai", "gpt-4o"))

        assert b"".join(received) == raw
        assert sink.events[0]["response"]["choices"][0]["message"]["content"] == "héllo"

    @pytest.mark.asyncio
    async def test_encoded_body_decoded_before_parsing(self, reconstructor, sink):
        compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        encoded = compressor.compress(b"".join(_openai_frames())) + compressor.flush()
        pieces = [encoded[:5], encoded[5:]]

        received = await _consume(
            reconstructor.wrap(_body(pieces), "openai", "gpt-4o", content_decoder=DeflateDecoder())
        )

        assert received == pieces
        assert sink.events[0]["response"]["choices"][0]["message"]["content"] == "Hello"

    @pytest.mark.asyncio
    async def test_undecodable_body_still_reaches_consumer(self, reconstructor, sink, caplog):
        frames = _openai_frames()
        with caplog.at_level(logging.WARNING, logger="agenttrace.tracing.streaming"):
            received = await _consume(
                reconstructor.wrap(_body(frames), "openai", "gpt-4o", content_decoder=BrokenDecoder())
            )

        assert received == frames
        [event] = sink.events
        assert event["type"] == "ai_response"
        assert event["total_chunks"] == 0
        assert "could not be decoded" in caplog.text

    @pytest.mark.asyncio
    async def test_tool_call_fragments(self, reconstructor, sink):
        frames = [
            _sse({"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": ""}}]}}]}),
            _sse({"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"path":'}}]}}]}),
            _sse({"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"a.py"}'}}]}, "finish_reason": "tool_calls"}]}),
        ]
        await _consume(reconstructor.wrap(_body(frames), "openai", "gpt-4o"))

        [tool_call] = sink.events[0]["response"]["choices"][0]["message"]["tool_calls"]
        assert tool_call["id"] == "call_1"
        assert tool_call["function"] == {"name": "read_file", "arguments": '{"path":"a.py"}'}

    @pytest.mark.asyncio
    async def test_unknown_model_taken_from_stream(self, reconstructor, sink):
        await _consume(reconstructor.wrap(_body(_openai_frames()), "openai", "unknown"))
        assert sink.events[0]["model"] == "gpt-4o"


class TestAnthropicStream:
    @pytest.mark.asyncio
    async def test_content_blocks_and_usage(self, sink, clock):
        reconstructor = StreamingReconstructor(sink, "s-1", token_tracker=TokenTracker(), clock=clock)
        frames = [
            b"event: message_start\n",
            _sse({"type": "message_start", "message": {"id": "msg_1", "model": "claude-3-5-sonnet-20241022", "content": [], "usage": {"input_tokens": 12, "output_tokens": 1}}}),
            b"event: content_block_start\n",
            _sse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            _sse({"type": "ping"}),
            _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}),
            _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}}),
            _sse({"type": "content_block_stop", "index": 0}),
            _sse({"type": "message_delta", "delta": {"stop_reason": "end_turn", "stop_sequence": None}, "usage": {"output_tokens": 7}}),
            _sse({"type": "message_stop"}),
        ]

        await _consume(reconstructor.wrap(_body(frames), "anthropic", "claude-3-5-sonnet-20241022"))

        [event] = sink.events
        response = event["response"]
        assert response["content"][0]["text"] == "Hi there"
        assert response["stop_reason"] == "end_turn"
        assert response["usage"] == {"input_tokens": 12, "output_tokens": 7}
        assert event["tokens_used"] == {"input_tokens": 12, "output_tokens": 7}
        assert event["cost"] == pytest.approx(0.00014)


class TestGeminiStream:
    @pytest.mark.asyncio
    async def test_json_array_stream(self, reconstructor, sink):
        first = {"candidates": [{"content": {"parts": [{"text": "Hi"}], "role": "model"}}]}
        second = {
            "candidates": [{"content": {"parts": [{"text": " there"}], "role": "model"}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2},
        }
        frames = [
            f"[{json.dumps(first)}\n".encode(),
            f",{json.dumps(second)}\n".encode(),
            b"]\n",
        ]

        await _consume(reconstructor.wrap(_body(frames), "google", "gemini-1.5-flash"))

        [event] = sink.events
        candidate = event["response"]["candidates"][0]
        assert candidate["content"]["parts"][0]["text"] == "Hi there"
        assert candidate["finishReason"] == "STOP"
        assert event["response"]["usageMetadata"]["candidatesTokenCount"] == 2
        assert event["total_chunks"] == 2


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_malformed_frame_skipped(self, reconstructor, sink, caplog):
        frames = _openai_frames()
        frames.insert(1, b"data: {not json}\n\n")
        with caplog.at_level(logging.WARNING, logger="agenttrace.tracing.streaming"):
            received = await _consume(reconstructor.wrap(_body(frames), "openai", "gpt-4o"))

        assert received == frames
        assert sink.events[0]["total_chunks"] == 2
        assert sink.events[0]["response"]["choices"][0]["message"]["content"] == "Hello"
        assert "malformed frame" in caplog.text

    @pytest.mark.asyncio
    async def test_origin_error_propagates(self, reconstructor, sink):
        frames = _openai_frames()[:1] + [b"data: {\"choices\": []}\n\n"]
        received = []
        with pytest.raises(ConnectionError, match="reset"):
            async for chunk in reconstructor.wrap(_body(frames, error=ConnectionError("reset")), "openai", "gpt-4o"):
                received.append(chunk)

        assert received == frames
        [event] = sink.events
        assert event["type"] == "ai_stream_error"
        assert event["error"] == "reset"
        assert event["chunks_processed"] == 2
        assert reconstructor.get_active_streams() == []

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_stream(self, clock):
        async def broken_sink(event):
            raise RuntimeError("pipeline gone")

        reconstructor = StreamingReconstructor(broken_sink, "s-1", clock=clock)
        frames = _openai_frames()
        assert await _consume(reconstructor.wrap(_body(frames), "openai", "gpt-4o")) == frames


class TestIntermediateChunks:
    @pytest.mark.asyncio
    async def test_chunk_events_emitted(self, sink, clock):
        reconstructor = StreamingReconstructor(sink, "s-1", capture_intermediate_chunks=True, clock=clock)
        await _consume(reconstructor.wrap(_body(_openai_frames()), "openai", "gpt-4o"))

        chunks = sink.of_type("ai_stream_chunk")
        assert [event["chunk_index"] for event in chunks] == [0, 1]
        assert chunks[0]["data"]["choices"][0]["delta"]["content"] == "Hel"
        assert [event["type"] for event in sink.events][-1] == "ai_response"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_active_stream_tracking_and_cleanup(self, reconstructor, sink):
        generator = reconstructor.wrap(_body(_openai_frames()), "openai", "gpt-4o")
        await generator.__anext__()
        await generator.__anext__()

        [stream_id] = reconstructor.get_active_streams()
        status = reconstructor.get_stream_status(stream_id)
        assert status.state == StreamState.RECEIVING
        assert status.total_chunks == 1

        await reconstructor.cleanup()
        await generator.aclose()

        [event] = sink.events
        assert event["response"]["choices"][0]["message"]["content"] == "Hel"
        assert reconstructor.get_active_streams() == []
        with pytest.raises(StreamingError):
            await _consume(reconstructor.wrap(_body([]), "openai", "gpt-4o"))

    def test_is_streaming_response(self):
        assert StreamingReconstructor.is_streaming_response({"Content-Type": "text/event-stream; charset=utf-8"})
        assert StreamingReconstructor.is_streaming_response({"content-type": "application/x-ndjson"})
        assert not StreamingReconstructor.is_streaming_response({"content-type": "application/json"})
        assert not StreamingReconstructor.is_streaming_response(None)


class TestMergeStreamChunk:
    def test_openai_usage_overwrites(self):
        merged = {}
        merge_stream_chunk(merged, {"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1}})
        merge_stream_chunk(merged, {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 9}})
        assert merged["usage"] == {"prompt_tokens": 5, "completion_tokens": 9}
        assert merged["object"] == "chat.completion"

    def test_unrecognised_shape_last_write_wins(self):
        merged = {}
        merge_stream_chunk(merged, {"status": "working", "step": 1})
        merge_stream_chunk(merged, {"step": 2})
        assert merged == {"status": "working", "step": 2}
