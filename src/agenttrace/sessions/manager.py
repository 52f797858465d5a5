# src/agenttrace/sessions/manager.py
"""
Session Registry for agenttrace.

Holds the in-memory state machine and live metrics of every traced session::

    active --end_session-------------> completed
    active --mark_session_failed-----> failed
    active --idle beyond 2 hours-----> expired

All transitions are one-way. Only ``active`` sessions accept events, metric
updates or an end; anything else is answered with a ``SessionNotActiveError``
result. Every public operation returns an ``OperationResult`` rather than
raising.

Capacity: when ``max_sessions_retained`` records are held, starting a new
session first evicts the one with the earliest ``start_time``. Eviction
drops only the in-memory record; the session's file stays on disk for the
retention sweep.

A background task started by :meth:`SessionRegistry.start` removes sessions
idle beyond the timeout every 5 minutes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from ..config import TracerConfig
from ..exceptions import SessionError, SessionNotActiveError, SessionNotFoundError
from ..models import (
    FILE_OPERATION_TOOLS,
    EventType,
    OperationResult,
    Session,
    SessionMetrics,
    SessionStatus,
    SessionSummary,
    TokenUsage,
    now_ms,
)
from ..observability.cost_tracker import COST_DECIMAL_PLACES

logger = logging.getLogger(__name__)

SESSION_IDLE_TIMEOUT_MS = 2 * 60 * 60 * 1000
SWEEP_INTERVAL_SECONDS = 5 * 60


def _number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return 0


class SessionRegistry:
    """
    Owns every ``Session`` record. Other components refer to sessions only by ID.

    Args:
        config: Snapshot supplying ``max_sessions_retained``.
        clock: Returns the current time in epoch ms; injectable for tests.
        idle_timeout_ms: Inactivity after which a session counts as expired.
        sweep_interval_seconds: Period of the background expiry sweep.
    """

    def __init__(
        self,
        config: TracerConfig,
        clock: Callable[[], float] = now_ms,
        idle_timeout_ms: int = SESSION_IDLE_TIMEOUT_MS,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ):
        self._config = config
        self._clock = clock
        self._idle_timeout_ms = idle_timeout_ms
        self._sweep_interval_seconds = sweep_interval_seconds
        self._sessions: dict[str, Session] = {}
        self._sweep_task: asyncio.Task | None = None
        self._running = False
        self._removal_listeners: list[Callable[[str], None]] = []

    @property
    def config(self) -> TracerConfig:
        return self._config

    def update_config(self, config: TracerConfig) -> None:
        self._config = config

    def add_removal_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(session_id)`` whenever a record is evicted or swept."""
        self._removal_listeners.append(listener)

    def _forget(self, session_id: str) -> None:
        del self._sessions[session_id]
        for listener in self._removal_listeners:
            try:
                listener(session_id)
            except Exception as e:
                logger.warning(f"Session removal listener failed for {session_id}: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_session(
        self,
        user_query: str,
        metadata: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> OperationResult[str]:
        """Register a new active session, evicting the oldest one when at capacity.

        Args:
            user_query: The request that started the traced run.
            metadata: Free-form context kept with the session.
            session_id: Reuse an externally assigned ID instead of a fresh UUID4.
        """
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._sessions:
            return OperationResult.fail(SessionError(f"Session '{session_id}' already exists."))

        while len(self._sessions) >= self._config.max_sessions_retained:
            self._evict_oldest()

        now = self._clock()
        self._sessions[session_id] = Session(
            id=session_id,
            start_time=now,
            user_query=user_query,
            metadata=dict(metadata or {}),
            metrics=SessionMetrics(last_activity_time=now),
        )
        logger.info(f"Started session {session_id}")
        return OperationResult.ok(session_id)

    def _evict_oldest(self) -> None:
        oldest = min(self._sessions.values(), key=lambda session: session.start_time)
        self._forget(oldest.id)
        logger.info(f"Evicted session {oldest.id} (status {oldest.status.value}) to stay within capacity")

    def end_session(
        self, session_id: str, summary: Mapping[str, Any] | None = None
    ) -> OperationResult[SessionSummary]:
        """Complete a session and return its summary.

        ``summary`` overrides the accumulated figures field by field
        (``tokens_used`` merges per key as well). ``total_cost`` is rounded
        to 5 decimal places.
        """
        lookup = self._require_active(session_id)
        if not lookup.success:
            return OperationResult.fail(lookup.error)
        session = lookup.data

        now = self._clock()
        metrics = session.metrics
        computed: dict[str, Any] = {
            "total_requests": metrics.total_requests,
            "ai_requests": metrics.ai_requests,
            "file_operations": metrics.file_operations,
            "total_cost": round(metrics.total_cost, COST_DECIMAL_PLACES),
            "tokens_used": metrics.tokens_used.model_dump(),
            "duration_ms": now - session.start_time,
            "error_count": metrics.error_count,
        }
        overrides = dict(summary or {})
        if isinstance(overrides.get("tokens_used"), Mapping):
            computed["tokens_used"] = {**computed["tokens_used"], **overrides.pop("tokens_used")}
        computed.update(overrides)
        if isinstance(computed.get("total_cost"), float):
            computed["total_cost"] = round(computed["total_cost"], COST_DECIMAL_PLACES)

        try:
            final_summary = SessionSummary.model_validate(computed)
        except ValueError as e:
            return OperationResult.fail(SessionError(f"Invalid summary for session '{session_id}': {e}"))

        session.status = SessionStatus.COMPLETED
        session.end_time = now
        logger.info(
            f"Ended session {session_id}: {final_summary.total_requests} events, "
            f"cost {final_summary.total_cost:.5f}"
        )
        return OperationResult.ok(final_summary)

    def mark_session_failed(self, session_id: str, error: BaseException | str) -> OperationResult[None]:
        """Move a session to ``failed`` after its log could not be written."""
        lookup = self._require_active(session_id)
        if not lookup.success:
            return OperationResult.fail(lookup.error)
        session = lookup.data
        session.status = SessionStatus.FAILED
        session.end_time = self._clock()
        session.error = str(error)
        session.metrics.error_count += 1
        logger.warning(f"Session {session_id} marked failed: {error}")
        return OperationResult.ok()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_session(self, session_id: str) -> OperationResult[Session]:
        """Copy of a session. An active session idle past the timeout is flagged expired and not returned."""
        session = self._sessions.get(session_id)
        if session is None:
            return OperationResult.fail(SessionNotFoundError(session_id))
        if session.is_active and self._is_idle(session, self._clock()):
            session.status = SessionStatus.EXPIRED
            logger.info(f"Session {session_id} expired after inactivity")
            return OperationResult.fail(SessionNotFoundError(session_id, message="Session expired."))
        return OperationResult.ok(session.model_copy(deep=True))

    def get_active_sessions(self) -> list[str]:
        return [session.id for session in self._sessions.values() if session.is_active]

    def get_session_count(self) -> int:
        return len(self._sessions)

    def _require_active(self, session_id: str) -> OperationResult[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return OperationResult.fail(SessionNotFoundError(session_id))
        if not session.is_active:
            return OperationResult.fail(SessionNotActiveError(session_id, session.status.value))
        return OperationResult.ok(session)

    def _is_idle(self, session: Session, now: float) -> bool:
        return now - session.metrics.last_activity_time > self._idle_timeout_ms

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def add_event_to_session(self, session_id: str, event: Mapping[str, Any]) -> OperationResult[None]:
        """Count an accepted event against its session and fold its metrics."""
        lookup = self._require_active(session_id)
        if not lookup.success:
            return OperationResult.fail(lookup.error)
        session = lookup.data
        session.event_count += 1
        self._fold_event(session.metrics, event)
        session.metrics.last_activity_time = self._clock()
        return OperationResult.ok()

    def update_metrics(self, session_id: str, updates: Mapping[str, Any]) -> OperationResult[None]:
        """Overwrite selected metric fields of an active session."""
        lookup = self._require_active(session_id)
        if not lookup.success:
            return OperationResult.fail(lookup.error)
        session = lookup.data
        try:
            merged = {**session.metrics.model_dump(), **dict(updates)}
            session.metrics = SessionMetrics.model_validate(merged)
        except ValueError as e:
            return OperationResult.fail(SessionError(f"Invalid metrics update for session '{session_id}': {e}"))
        session.metrics.last_activity_time = self._clock()
        return OperationResult.ok()

    def record_file_path(self, session_id: str, file_path: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.file_path = file_path

    def record_flush(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_flush_time = self._clock()

    @staticmethod
    def _fold_event(metrics: SessionMetrics, event: Mapping[str, Any]) -> None:
        metrics.total_requests += 1
        event_type = event.get("type")

        if event_type == EventType.AI_REQUEST.value:
            metrics.ai_requests += 1
        elif event_type == EventType.AI_RESPONSE.value:
            metrics.total_cost += _number(event.get("cost"))
            tokens = event.get("tokens_used")
            if isinstance(tokens, Mapping):
                metrics.tokens_used = TokenUsage(
                    input_tokens=metrics.tokens_used.input_tokens + int(_number(tokens.get("input_tokens"))),
                    output_tokens=metrics.tokens_used.output_tokens + int(_number(tokens.get("output_tokens"))),
                )
        elif event_type == EventType.TOOL_EXECUTION.value:
            metrics.tool_executions += 1
            if str(event.get("tool_name", "")).lower() in FILE_OPERATION_TOOLS:
                metrics.file_operations += 1
            if event.get("success") is not True:
                metrics.error_count += 1
        elif event_type == EventType.FILE_OPERATION.value:
            metrics.file_operations += 1
            if event.get("success") is not True:
                metrics.error_count += 1
        elif event_type == EventType.NETWORK_REQUEST.value:
            metrics.network_requests += 1
        elif event_type == EventType.NETWORK_RESPONSE.value:
            if _number(event.get("status")) >= 400:
                metrics.error_count += 1
        elif event_type in (EventType.ERROR.value, EventType.AI_STREAM_ERROR.value):
            metrics.error_count += 1

    # -------------------------------------------------------------------------
    # Expiry sweep
    # -------------------------------------------------------------------------

    def remove_expired_sessions(self) -> int:
        """Drop every session idle beyond the timeout. Returns how many were removed."""
        now = self._clock()
        expired = [session for session in self._sessions.values() if self._is_idle(session, now)]
        for session in expired:
            if session.is_active:
                session.status = SessionStatus.EXPIRED
            self._forget(session.id)
        if expired:
            logger.info(f"Removed {len(expired)} idle session(s)")
        return len(expired)

    async def start(self) -> None:
        """Start the background expiry sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._sweep_interval_seconds)
                self.remove_expired_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in session sweep loop: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Stop the sweep and complete every session still active."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        now = self._clock()
        for session in self._sessions.values():
            if session.is_active:
                session.status = SessionStatus.COMPLETED
                session.end_time = now
        logger.debug(f"Session registry shut down with {len(self._sessions)} session(s) in memory")
