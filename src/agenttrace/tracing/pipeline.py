# src/agenttrace/tracing/pipeline.py
"""
Event Pipeline: the orchestrator between interceptors and the session logs.

Flow of one event through :meth:`EventPipeline.log_event`::

    validate + redact ──> session lookup ──> serialize ──> registry metrics
        ──> in-memory queue ──(batch size | memory budget | timer | end | shutdown)──> flush

Flush drains the whole queue, groups lines by session (preserving each
session's call order) and appends each group to its file in one write. A
failed write is isolated to its session: the session is marked ``failed``
and a best-effort ``error`` event is appended to that session's own file,
while other sessions' groups are written normally.

At most one flush runs at a time. A flush requested while one is in flight
waits for it instead of starting a second writer, then drains whatever was
queued meanwhile.

Events are serialized when they are accepted, so an event that cannot be
encoded within ``max_body_size`` is rejected to its caller immediately and
the queued line is immutable from then on.

Usage:
    >>> async with EventPipeline(load_config()) as pipeline:
    ...     started = await pipeline.start_session("fix the failing test")
    ...     session_id = started.data
    ...     await pipeline.log_event({...})
    ...     ended = await pipeline.end_session(session_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
import traceback
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .. import __version__
from ..config import TracerConfig, load_config
from ..exceptions import (
    AgentTraceError,
    ConfigError,
    EventValidationError,
    PipelineShutdownError,
)
from ..models import EventType, OperationResult, SessionSummary, now_ms
from ..sessions.manager import SessionRegistry
from ..storage.log_store import CleanupReport, SessionLogStore
from .serialization import EventSerializer
from .validation import EventValidator

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass
class BatchLogResult:
    """Per-event outcome counts of :meth:`EventPipeline.log_batch`."""

    successful_events: int = 0
    failed_events: int = 0
    errors: list[Exception] = field(default_factory=list)


class EventPipeline:
    """
    Accepts trace events, keeps per-session metrics and writes batched JSONL.

    Components default to ones built from ``config``; pass them explicitly to
    share or replace them.

    Args:
        config: Settings snapshot; resolved from defaults and environment if omitted.
        registry: Session state machine.
        log_store: Session file storage.
        validator: Validation and redaction.
        serializer: JSON line encoding.
        clock: Returns the current time in epoch ms.
    """

    def __init__(
        self,
        config: TracerConfig | None = None,
        *,
        registry: SessionRegistry | None = None,
        log_store: SessionLogStore | None = None,
        validator: EventValidator | None = None,
        serializer: EventSerializer | None = None,
        clock: Callable[[], float] = now_ms,
    ):
        self._config = config or load_config()
        self._clock = clock
        self._serializer = serializer or EventSerializer(self._config)
        self._validator = validator or EventValidator(self._config, clock=clock)
        self._registry = registry or SessionRegistry(self._config, clock=clock)
        self._log_store = log_store or SessionLogStore(self._config, self._serializer)
        self._registry.add_removal_listener(self._log_store.forget_session)

        self._queue: list[tuple[str, str]] = []
        self._queued_bytes = 0
        self._in_flight_flush: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._shutdown_lock = asyncio.Lock()
        self._started = False
        self._shutting_down = False
        self._shutdown_complete = False

        # Statistics
        self._events_logged = 0
        self._events_rejected = 0
        self._flush_count = 0
        self._write_failures = 0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> TracerConfig:
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def log_store(self) -> SessionLogStore:
        return self._log_store

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Create the output directories and start the flush timer and session sweep."""
        if self._started:
            return
        self._started = True
        ensured = await self._log_store.ensure_directory_structure()
        if not ensured.success:
            logger.error(f"Trace output directory unavailable: {ensured.error}")
        await self._registry.start()
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(
            f"Event pipeline started (output: {self._config.output_dir}, "
            f"batch size: {self._config.batch_size}, flush interval: {self._config.flush_interval_ms}ms)"
        )

    async def __aenter__(self) -> EventPipeline:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def shutdown(self) -> OperationResult[None]:
        """Stop timers, drain the queue and complete remaining sessions. Safe to call repeatedly."""
        async with self._shutdown_lock:
            if self._shutdown_complete:
                return OperationResult.ok()
            self._shutting_down = True

            if self._flush_task:
                self._flush_task.cancel()
                try:
                    await self._flush_task
                except asyncio.CancelledError:
                    pass
                self._flush_task = None

            await self.flush()
            await self._registry.shutdown()
            self._shutdown_complete = True

        logger.info(
            f"Event pipeline shut down ({self._events_logged} events logged, "
            f"{self._events_rejected} rejected, {self._write_failures} write failures)"
        )
        return OperationResult.ok()

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        user_query: str,
        metadata: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> OperationResult[str]:
        """Register a session, create its log file and log its ``session_start`` event.

        ``metadata`` may carry ``agent_version`` and ``working_directory``
        for the start event; they default to this library's version and the
        current directory.
        """
        if self._shutting_down:
            return OperationResult.fail(PipelineShutdownError())
        if not isinstance(user_query, str) or not user_query:
            return OperationResult.fail(EventValidationError(["user_query must be a non-empty string"]))
        await self.start()

        metadata = dict(metadata or {})
        started = self._registry.start_session(user_query, metadata, session_id=session_id)
        if not started.success:
            return started
        session_id = started.data

        created = await self._log_store.create_session_file(session_id)
        if not created.success:
            self._registry.mark_session_failed(session_id, created.error)
            return OperationResult.fail(created.error)
        self._registry.record_file_path(session_id, created.data)

        start_event = {
            "type": EventType.SESSION_START.value,
            "timestamp": self._clock(),
            "session_id": session_id,
            "user_query": user_query,
            "agent_version": str(metadata.get("agent_version") or __version__),
            "working_directory": str(metadata.get("working_directory") or os.getcwd()),
            "metadata": metadata,
        }
        logged = await self.log_event(start_event)
        if not logged.success:
            return OperationResult.ok(session_id, warnings=[f"session_start event not logged: {logged.error}"])
        return OperationResult.ok(session_id)

    async def end_session(
        self, session_id: str, summary: Mapping[str, Any] | None = None
    ) -> OperationResult[SessionSummary]:
        """Complete a session, write its ``session_end`` event and verify its file.

        A file that fails verification turns into a warning on an otherwise
        successful result; the session is still ended.
        """
        await self.flush()

        ended = self._registry.end_session(session_id, summary)
        if not ended.success:
            return ended
        final_summary = ended.data

        end_event = {
            "type": EventType.SESSION_END.value,
            "timestamp": self._clock(),
            "session_id": session_id,
            "duration": final_summary.duration_ms,
            "summary": final_summary.model_dump(mode="json"),
        }
        warnings: list[str] = []
        try:
            self._enqueue(session_id, self._prepare_line(end_event)[1])
        except AgentTraceError as e:
            warnings.append(f"session_end event not logged: {e}")
        await self.flush()

        finalized = await self._log_store.finalize(session_id)
        if not finalized.success:
            warnings.append(f"Session file finalization failed: {finalized.error}")
            logger.warning(f"Session {session_id} ended with unverified log file: {finalized.error}")
        return OperationResult.ok(final_summary, warnings=warnings)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def log_event(self, event: Mapping[str, Any]) -> OperationResult[None]:
        """Validate, redact, account and queue one event for its session's file."""
        if self._shutting_down:
            return OperationResult.fail(PipelineShutdownError())

        try:
            sanitized, line = self._prepare_line(event)
        except AgentTraceError as e:
            self._events_rejected += 1
            return OperationResult.fail(e)
        session_id = event["session_id"]

        lookup = self._registry.get_session(session_id)
        if not lookup.success:
            self._events_rejected += 1
            return OperationResult.fail(lookup.error)

        accounted = self._registry.add_event_to_session(session_id, sanitized)
        if not accounted.success:
            self._events_rejected += 1
            return OperationResult.fail(accounted.error)

        self._enqueue(session_id, line)
        if (
            len(self._queue) >= self._config.batch_size
            or self._queued_bytes >= self._config.max_memory_usage_mb * BYTES_PER_MB
        ):
            await self.flush()
        return OperationResult.ok()

    async def log_batch(self, events: list[Mapping[str, Any]]) -> OperationResult[BatchLogResult]:
        """Log events one by one in order; the result counts successes and failures."""
        outcome = BatchLogResult()
        for event in events:
            result = await self.log_event(event)
            if result.success:
                outcome.successful_events += 1
            else:
                outcome.failed_events += 1
                if result.error is not None:
                    outcome.errors.append(result.error)
        return OperationResult(success=outcome.failed_events == 0, data=outcome)

    def _prepare_line(self, event: Any) -> tuple[dict[str, Any], str]:
        """Redacted copy of ``event`` and its serialized line.

        Raises:
            EventValidationError: The event is malformed or out of policy.
            SerializationError: The event cannot be encoded within the size limit.
        """
        validation = self._validator.validate(event)
        if not validation.is_valid:
            raise EventValidationError(validation.errors)
        serialized = self._serializer.serialize(validation.sanitized_event)
        if not serialized.success:
            raise serialized.error
        return validation.sanitized_event, serialized.data

    def _enqueue(self, session_id: str, line: str) -> None:
        self._queue.append((session_id, line))
        self._queued_bytes += len(line)
        self._events_logged += 1

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    async def flush(self) -> None:
        """Write every queued event. Concurrent callers share the flush already in flight."""
        while True:
            in_flight = self._in_flight_flush
            if in_flight is None:
                if not self._queue:
                    return
                in_flight = asyncio.create_task(self._drain_queue())
                self._in_flight_flush = in_flight
            await asyncio.shield(in_flight)
            if not self._queue:
                return

    async def _drain_queue(self) -> None:
        try:
            batch, self._queue = self._queue, []
            self._queued_bytes = 0
            grouped: dict[str, list[str]] = {}
            for session_id, line in batch:
                grouped.setdefault(session_id, []).append(line)

            for session_id, lines in grouped.items():
                try:
                    result = await self._log_store.append(session_id, lines)
                except Exception as e:
                    result = OperationResult.fail(e)
                if result.success:
                    self._registry.record_flush(session_id)
                else:
                    await self._handle_write_failure(session_id, len(lines), result.error)

            self._flush_count += 1
            logger.debug(f"Flushed {len(batch)} event(s) across {len(grouped)} session(s)")
        finally:
            self._in_flight_flush = None

    async def _handle_write_failure(self, session_id: str, failed_count: int, error: Exception) -> None:
        self._write_failures += 1
        logger.error(f"Failed to write {failed_count} event(s) for session {session_id}: {error}", exc_info=error)

        marked = self._registry.mark_session_failed(session_id, error)
        if not marked.success:
            logger.debug(f"Could not mark session {session_id} failed: {marked.error}")

        error_event = {
            "type": EventType.ERROR.value,
            "timestamp": self._clock(),
            "session_id": session_id,
            "error": {
                "message": str(error),
                "name": type(error).__name__,
                "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            },
            "failed_events_count": failed_count,
        }
        serialized = self._serializer.serialize(self._validator.redact(error_event))
        if not serialized.success:
            logger.error(f"Could not encode error event for session {session_id}: {serialized.error}")
            return
        try:
            appended = await self._log_store.append(session_id, [serialized.data])
        except Exception as e:
            logger.error(f"Could not record error event for session {session_id}: {e}")
            return
        if not appended.success:
            logger.error(f"Could not record error event for session {session_id}: {appended.error}")

    async def _flush_loop(self) -> None:
        """Background task flushing on the configured interval."""
        while not self._shutting_down:
            try:
                await asyncio.sleep(self._config.flush_interval_seconds)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in event flush loop: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Maintenance and introspection
    # -------------------------------------------------------------------------

    async def cleanup(self) -> OperationResult[CleanupReport]:
        """Apply the configured retention to session files. ``auto_cleanup_days=0`` disables it."""
        if self._config.auto_cleanup_days <= 0:
            return OperationResult.ok(CleanupReport())
        return await self._log_store.cleanup(self._config.auto_cleanup_days)

    def get_session_stats(self, session_id: str) -> OperationResult[dict[str, Any]]:
        lookup = self._registry.get_session(session_id)
        if not lookup.success:
            return OperationResult.fail(lookup.error)
        return OperationResult.ok(
            {
                "session": lookup.data,
                "queue_length": len(self._queue),
                "is_processing": self._in_flight_flush is not None,
            }
        )

    def get_active_sessions(self) -> list[str]:
        return self._registry.get_active_sessions()

    def get_stats(self) -> dict[str, Any]:
        return {
            "events_logged": self._events_logged,
            "events_rejected": self._events_rejected,
            "flush_count": self._flush_count,
            "write_failures": self._write_failures,
            "queue_length": len(self._queue),
            "active_sessions": len(self._registry.get_active_sessions()),
        }

    def update_config(self, config: TracerConfig | Mapping[str, Any]) -> OperationResult[TracerConfig]:
        """Validate and install a new snapshot in every component at once."""
        try:
            if isinstance(config, TracerConfig):
                new_config = config.with_updates()
            else:
                new_config = self._config.with_updates(**dict(config))
        except ConfigError as e:
            return OperationResult.fail(e)

        self._validator.update_config(new_config)
        self._serializer.update_config(new_config)
        self._registry.update_config(new_config)
        self._log_store.update_config(new_config)
        self._config = new_config
        logger.info("Tracer configuration updated")
        return OperationResult.ok(new_config)
