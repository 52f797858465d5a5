# src/agenttrace/tracing/interceptor.py
"""
httpx transport that traces AI provider calls into an ``EventPipeline``.

The transport wraps another transport and is handed to a client explicitly;
nothing is patched globally::

    transport = TracingTransport(pipeline, session_id)
    async with httpx.AsyncClient(transport=transport) as client:
        await client.post("https://api.openai.com/v1/chat/completions", json=payload)
    await transport.aclose()

Requests to a recognised provider host produce an ``ai_request`` event
before they are sent. Streamed responses are wrapped by a
``StreamingReconstructor``, which logs the merged ``ai_response`` when the
caller finishes reading. Other responses are read in full, logged as an
``ai_response`` carrying token usage and cost, and handed back with their
body intact. Credential query parameters such as Gemini's ``key`` are
masked in every logged URL. Requests to any other host pass through
untouched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

import httpx
from httpx._decoders import SUPPORTED_DECODERS, MultiDecoder

from ..models import EventType, OperationResult
from ..observability.token_tracker import TokenTracker
from ..providers.base import BaseProviderAdapter
from ..providers.manager import ProviderManager
from .pipeline import EventPipeline
from .streaming import ContentDecoder, StreamingReconstructor
from .validation import REDACTION_MARKER

logger = logging.getLogger(__name__)

# Query parameters that carry credentials in provider URLs
SECRET_QUERY_PARAMS = ("key", "api_key", "access_token")


def _decode_json(content: bytes) -> Any:
    if not content:
        return None
    try:
        return json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return content.decode("utf-8", errors="replace")


def _loggable_url(url: httpx.URL) -> str:
    for name in SECRET_QUERY_PARAMS:
        if name in url.params:
            url = url.copy_set_param(name, REDACTION_MARKER)
    return str(url)


def _content_decoder(headers: httpx.Headers) -> ContentDecoder | None:
    """Decoder for the body's ``content-encoding``, selected the way ``httpx.Response`` selects its own."""
    decoders = []
    for value in headers.get_list("content-encoding", split_commas=True):
        value = value.strip().lower()
        if value != "identity" and value in SUPPORTED_DECODERS:
            decoders.append(SUPPORTED_DECODERS[value]())
    if not decoders:
        return None
    if len(decoders) == 1:
        return decoders[0]
    return MultiDecoder(children=decoders)


class _ReconstructingStream(httpx.AsyncByteStream):
    """Response body that reads through a reconstructor and closes the origin stream."""

    def __init__(self, origin: httpx.AsyncByteStream, reconstructed: AsyncGenerator[bytes, None]):
        self._origin = origin
        self._reconstructed = reconstructed

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._reconstructed:
            yield chunk

    async def aclose(self) -> None:
        await self._reconstructed.aclose()
        await self._origin.aclose()


class TracingTransport(httpx.AsyncBaseTransport):
    """
    Args:
        pipeline: Destination of the trace events.
        session_id: Session the events are logged against.
        transport: Transport that actually sends requests; a default
            ``httpx.AsyncHTTPTransport`` when omitted.
        providers: Adapter lookup for deciding which requests to trace.
        token_tracker: Token and cost accounting for responses.
        capture_intermediate_chunks: Forwarded to the streaming reconstructor.
    """

    def __init__(
        self,
        pipeline: EventPipeline,
        session_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
        providers: ProviderManager | None = None,
        token_tracker: TokenTracker | None = None,
        capture_intermediate_chunks: bool = False,
    ):
        self._pipeline = pipeline
        self._session_id = session_id
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._providers = providers or ProviderManager()
        self._token_tracker = token_tracker or TokenTracker(self._providers)
        self._clock = pipeline.clock
        self._reconstructor = StreamingReconstructor(
            pipeline.log_event,
            session_id,
            token_tracker=self._token_tracker,
            capture_intermediate_chunks=capture_intermediate_chunks,
            clock=self._clock,
        )

    @property
    def reconstructor(self) -> StreamingReconstructor:
        return self._reconstructor

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        adapter = self._providers.detect(str(request.url))
        if adapter is None:
            return await self._transport.handle_async_request(request)

        request_body = _decode_json(await request.aread())
        model = adapter.extract_model(request_body, str(request.url))
        start_time = self._clock()
        await self._log(self._request_event(adapter, model, request, request_body, start_time))

        try:
            response = await self._transport.handle_async_request(request)
        except Exception as e:
            await self._log(self._error_event(adapter, model, request, e))
            raise

        if response.status_code < 400 and self._reconstructor.is_streaming_response(response.headers):
            reconstructed = self._reconstructor.wrap(
                response.stream,
                adapter.name,
                model,
                start_time=start_time,
                request_body=request_body,
                content_decoder=_content_decoder(response.headers),
            )
            return httpx.Response(
                status_code=response.status_code,
                headers=response.headers,
                stream=_ReconstructingStream(response.stream, reconstructed),
                extensions=response.extensions,
                request=request,
            )

        # Inner transports may hand back a response whose body is already loaded
        try:
            await response.aread()
        except Exception as e:
            await self._log(self._error_event(adapter, model, request, e))
            raise
        response_body = _decode_json(response.content)
        await self._log(self._response_event(adapter, model, response, request_body, response_body, start_time))
        return response

    def _request_event(
        self,
        adapter: BaseProviderAdapter,
        model: str,
        request: httpx.Request,
        request_body: Any,
        timestamp: float,
    ) -> dict[str, Any]:
        event: dict[str, Any] = {
            "type": EventType.AI_REQUEST.value,
            "timestamp": timestamp,
            "session_id": self._session_id,
            "provider": adapter.name,
            "model": model,
            "messages": adapter.extract_messages(request_body),
            "url": _loggable_url(request.url),
            "method": request.method,
            "headers": dict(request.headers),
        }
        if self._pipeline.config.capture_request_bodies:
            event["request"] = adapter.sanitize_request(request_body)
        return event

    def _error_event(
        self, adapter: BaseProviderAdapter, model: str, request: httpx.Request, error: Exception
    ) -> dict[str, Any]:
        return {
            "type": EventType.ERROR.value,
            "timestamp": self._clock(),
            "session_id": self._session_id,
            "error": {"message": str(error), "name": type(error).__name__},
            "provider": adapter.name,
            "model": model,
            "url": _loggable_url(request.url),
        }

    def _response_event(
        self,
        adapter: BaseProviderAdapter,
        model: str,
        response: httpx.Response,
        request_body: Any,
        response_body: Any,
        start_time: float,
    ) -> dict[str, Any]:
        end_time = self._clock()
        event: dict[str, Any] = {
            "type": EventType.AI_RESPONSE.value,
            "timestamp": end_time,
            "session_id": self._session_id,
            "provider": adapter.name,
            "model": model,
            "status_code": response.status_code,
            "timing": {"start": start_time, "end": end_time, "duration": max(0, end_time - start_time)},
        }
        if self._pipeline.config.capture_response_bodies:
            event["response"] = response_body
        if response.status_code < 400:
            tracked = self._token_tracker.track(adapter.name, model, request_body, response_body)
            event["tokens_used"] = tracked.usage.model_dump()
            event["token_source"] = tracked.source.value
            if tracked.cost is not None:
                event["cost"] = tracked.cost.total_cost
        return event

    async def _log(self, event: dict[str, Any]) -> OperationResult[None]:
        result = await self._pipeline.log_event(event)
        if not result.success:
            logger.warning(f"Trace event {event['type']} not logged: {result.error}")
        return result

    async def aclose(self) -> None:
        await self._reconstructor.cleanup()
        await self._transport.aclose()
