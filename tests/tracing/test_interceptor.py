# tests/tracing/test_interceptor.py
"""Tests for TracingTransport using httpx.MockTransport as the origin."""

import gzip
import json
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from agenttrace.tracing.interceptor import TracingTransport
from agenttrace.tracing.pipeline import EventPipeline

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"
API_KEY = "sk-" + "c" * 48
GOOGLE_KEY = "AIza" + "D" * 35

OPENAI_RESPONSE = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "model": "gpt-4o",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500},
}


@pytest_asyncio.fixture
async def pipeline(config, clock):
    pipeline = EventPipeline(config, clock=clock)
    yield pipeline
    await pipeline.shutdown()


@pytest_asyncio.fixture
async def session_id(pipeline):
    return (await pipeline.start_session("trace the client")).data


async def _events(pipeline, session_id, read_jsonl) -> list[dict]:
    await pipeline.flush()
    path = Path(pipeline.registry.get_session(session_id).data.file_path)
    return read_jsonl(path)


def _of_type(events, event_type):
    return [event for event in events if event["type"] == event_type]


class PreloadedTransport(httpx.AsyncBaseTransport):
    """Inner transport that reads every response body before returning it."""

    def __init__(self, body: dict):
        self.body = body

    async def handle_async_request(self, request):
        response = httpx.Response(200, json=self.body, request=request)
        await response.aread()
        return response


class TestNonStreaming:
    @pytest.mark.asyncio
    async def test_request_and_response_logged(self, pipeline, session_id, read_jsonl):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=OPENAI_RESPONSE)

        transport = TracingTransport(pipeline, session_id, transport=httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(
                OPENAI_URL,
                json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hello"}]},
                headers={"Authorization": f"Bearer {API_KEY}"},
            )

        assert response.status_code == 200
        assert response.json() == OPENAI_RESPONSE
        assert seen[0]["model"] == "gpt-4o"

        events = await _events(pipeline, session_id, read_jsonl)
        [request_event] = _of_type(events, "ai_request")
        [response_event] = _of_type(events, "ai_response")
        assert request_event["provider"] == "openai"
        assert request_event["model"] == "gpt-4o"
        assert request_event["messages"] == [{"role": "user", "content": "hello"}]
        assert request_event["method"] == "POST"
        assert request_event["request"]["messages"][0]["content"] == "hello"
        assert response_event["status_code"] == 200
        assert response_event["tokens_used"] == {"input_tokens": 1000, "output_tokens": 500}
        assert response_event["token_source"] == "exact"
        assert response_event["cost"] == pytest.approx(0.0075)
        assert response_event["response"]["choices"][0]["message"]["content"] == "hi"

        session = pipeline.registry.get_session(session_id).data
        assert session.metrics.ai_requests == 1
        assert session.metrics.total_cost == pytest.approx(0.0075)

    @pytest.mark.asyncio
    async def test_preloaded_response_body(self, pipeline, session_id, read_jsonl):
        transport = TracingTransport(pipeline, session_id, transport=PreloadedTransport(OPENAI_RESPONSE))
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(OPENAI_URL, json={"model": "gpt-4o", "messages": []})

        assert response.json() == OPENAI_RESPONSE
        [response_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_response")
        assert response_event["tokens_used"] == {"input_tokens": 1000, "output_tokens": 500}

    @pytest.mark.asyncio
    async def test_lazily_read_gzip_body(self, pipeline, session_id, read_jsonl):
        compressed = gzip.compress(json.dumps(OPENAI_RESPONSE).encode("utf-8"))

        async def body():
            yield compressed[:10]
            yield compressed[10:]

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "application/json", "content-encoding": "gzip"}, content=body()
            )

        transport = TracingTransport(pipeline, session_id, transport=httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(OPENAI_URL, json={"model": "gpt-4o", "messages": []})

        assert response.json() == OPENAI_RESPONSE
        [response_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_response")
        assert response_event["response"]["id"] == "chatcmpl-1"
        assert response_event["cost"] == pytest.approx(0.0075)

    @pytest.mark.asyncio
    async def test_api_key_never_written(self, pipeline, session_id, read_jsonl):
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, json=OPENAI_RESPONSE))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            await client.post(
                OPENAI_URL,
                json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]},
                headers={"Authorization": f"Bearer {API_KEY}", "X-Api-Key": API_KEY},
            )

        events = await _events(pipeline, session_id, read_jsonl)
        [request_event] = _of_type(events, "ai_request")
        assert request_event["headers"]["authorization"] == "[REDACTED]"
        assert request_event["headers"]["x-api-key"] == "[REDACTED]"
        path = Path(pipeline.registry.get_session(session_id).data.file_path)
        assert API_KEY not in path.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_google_key_never_written(self, pipeline, session_id, read_jsonl):
        body = {"candidates": [{"content": {"parts": [{"text": "ok"}], "role": "model"}}]}
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body))
        )
        payload = {"contents": [{"role": "user", "parts": [{"text": "ping"}]}]}
        async with httpx.AsyncClient(transport=transport) as client:
            await client.post(GEMINI_URL, json=payload, headers={"x-goog-api-key": GOOGLE_KEY})
            await client.post(GEMINI_URL, json=payload, params={"key": GOOGLE_KEY})

        events = await _events(pipeline, session_id, read_jsonl)
        header_request, query_request = _of_type(events, "ai_request")
        assert header_request["headers"]["x-goog-api-key"] == "[REDACTED]"
        assert "key=" in query_request["url"]
        assert query_request["model"] == "gemini-1.5-flash"
        path = Path(pipeline.registry.get_session(session_id).data.file_path)
        assert GOOGLE_KEY not in path.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_custom_key_in_query_masked(self, pipeline, session_id, read_jsonl):
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            await client.post(GEMINI_URL, json={}, params={"key": "proxy-issued-token", "alt": "json"})

        [request_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_request")
        assert "proxy-issued-token" not in request_event["url"]
        assert "alt=json" in request_event["url"]

    @pytest.mark.asyncio
    async def test_error_status_has_no_usage(self, pipeline, session_id, read_jsonl):
        error_body = {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}}
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(429, json=error_body))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(
                ANTHROPIC_URL,
                json={"model": "claude-3-5-haiku-20241022", "max_tokens": 10, "messages": [{"role": "user", "content": "hi"}]},
            )

        assert response.status_code == 429
        [response_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_response")
        assert response_event["status_code"] == 429
        assert "tokens_used" not in response_event
        assert "cost" not in response_event

    @pytest.mark.asyncio
    async def test_model_from_gemini_url(self, pipeline, session_id, read_jsonl):
        body = {
            "candidates": [{"content": {"parts": [{"text": "ok"}], "role": "model"}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
        }
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            await client.post(GEMINI_URL, json={"contents": [{"role": "user", "parts": [{"text": "ping"}]}]})

        events = await _events(pipeline, session_id, read_jsonl)
        [request_event] = _of_type(events, "ai_request")
        [response_event] = _of_type(events, "ai_response")
        assert request_event["provider"] == "google"
        assert request_event["model"] == "gemini-1.5-flash"
        assert request_event["messages"] == [{"role": "user", "content": "ping"}]
        assert response_event["tokens_used"] == {"input_tokens": 4, "output_tokens": 1}

    @pytest.mark.asyncio
    async def test_request_bodies_not_captured_when_disabled(self, config, clock, read_jsonl):
        pipeline = EventPipeline(config.with_updates(capture_request_bodies=False), clock=clock)
        try:
            session_id = (await pipeline.start_session("q")).data
            transport = TracingTransport(
                pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, json=OPENAI_RESPONSE))
            )
            async with httpx.AsyncClient(transport=transport) as client:
                await client.post(OPENAI_URL, json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]})

            [request_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_request")
            assert "request" not in request_event
        finally:
            await pipeline.shutdown()


class TestStreaming:
    @pytest.mark.asyncio
    async def test_sse_response_reconstructed(self, pipeline, session_id, read_jsonl):
        frames = [
            b'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{"role":"assistant","content":"Hel"}}]}\n\n',
            b'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n',
            b"data: [DONE]\n\n",
        ]

        async def stream():
            for frame in frames:
                yield frame

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())

        transport = TracingTransport(pipeline, session_id, transport=httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            async with client.stream(
                "POST", OPENAI_URL, json={"model": "gpt-4o", "stream": True, "messages": [{"role": "user", "content": "hi"}]}
            ) as response:
                received = b"".join([chunk async for chunk in response.aiter_bytes()])

        assert received == b"".join(frames)
        events = await _events(pipeline, session_id, read_jsonl)
        [response_event] = _of_type(events, "ai_response")
        assert response_event["response"]["choices"][0]["message"]["content"] == "Hello"
        assert response_event["response"]["_streaming"] is True
        assert response_event["total_chunks"] == 2
        assert response_event["tokens_used"]["output_tokens"] > 0
        assert "cost" in response_event
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_gzip_event_stream_reconstructed(self, pipeline, session_id, read_jsonl):
        plain = (
            b'data: {"model":"gpt-4o","choices":[{"index":0,"delta":{"content":"Hel"}}]}\n\n'
            b'data: {"model":"gpt-4o","choices":[{"index":0,"delta":{"content":"lo"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        compressed = gzip.compress(plain)

        async def stream():
            yield compressed[:20]
            yield compressed[20:]

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream", "content-encoding": "gzip"}, content=stream()
            )

        transport = TracingTransport(pipeline, session_id, transport=httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            async with client.stream("POST", OPENAI_URL, json={"model": "gpt-4o", "stream": True, "messages": []}) as response:
                received = b"".join([chunk async for chunk in response.aiter_bytes()])

        assert received == plain
        [response_event] = _of_type(await _events(pipeline, session_id, read_jsonl), "ai_response")
        assert response_event["response"]["choices"][0]["message"]["content"] == "Hello"
        assert response_event["total_chunks"] == 2
        await transport.aclose()


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_non_provider_host_untouched(self, pipeline, session_id, read_jsonl):
        transport = TracingTransport(
            pipeline, session_id, transport=httpx.MockTransport(lambda request: httpx.Response(200, text="plain"))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get("https://example.com/status")

        assert response.text == "plain"
        events = await _events(pipeline, session_id, read_jsonl)
        assert [event["type"] for event in events] == ["session_start"]

    @pytest.mark.asyncio
    async def test_transport_error_logged_and_raised(self, pipeline, session_id, read_jsonl):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = TracingTransport(pipeline, session_id, transport=httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(httpx.ConnectError):
                await client.post(OPENAI_URL, json={"model": "gpt-4o", "messages": []})

        events = await _events(pipeline, session_id, read_jsonl)
        [error_event] = _of_type(events, "error")
        assert error_event["error"]["name"] == "ConnectError"
        assert error_event["provider"] == "openai"
