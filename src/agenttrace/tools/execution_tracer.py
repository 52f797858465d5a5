# src/agenttrace/tools/execution_tracer.py
"""
Tracing of the agent's own tool calls.

``ToolExecutionTracer`` wraps a tool invocation (a plain callable or a
coroutine function), times it and logs a ``tool_execution`` event through
the pipeline. File reads and writes are logged as ``file_operation`` events
with a bounded preview and, for edits, a line diff summary. Shell commands
are delegated to ``BashTracer``. On shutdown the tracer writes one
``tool_result`` event holding its running metrics.

Failures of the wrapped tool are captured in the event and returned as a
failed ``OperationResult``; they are never raised to the caller.
"""

from __future__ import annotations

import difflib
import inspect
import json
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from ..models import EventType, OperationResult
from .bash_tracer import BashTracer, CommandResult
from .sanitizer import DEFAULT_MAX_OUTPUT_SIZE, sanitize_value

if TYPE_CHECKING:
    from ..tracing.pipeline import EventPipeline

logger = logging.getLogger(__name__)

CONTENT_PREVIEW_CHARS = 500

DEFAULT_BLOCKED_PATHS = ("/etc/passwd", "/etc/shadow", "~/.ssh/", "~/.aws/", "~/.env")


class ToolExecutionMetrics(BaseModel):
    """Running totals for one tracer."""

    file_operations: int = 0
    bash_commands: int = 0
    total_tool_calls: int = 0
    average_execution_time: float = 0.0
    total_data_processed: int = 0
    sanitized_operations: int = 0
    errors: int = 0


class ToolExecutionTracer:
    """
    Times tool invocations for one session and logs them to the pipeline.

    Args:
        pipeline: Destination of the events.
        session_id: Session the events are logged against.
        capture_file_operations: When False, ``trace_file_operation`` logs nothing.
        sanitize_output: Scrub credential shapes from parameters, results and output.
        max_output_size: Characters kept per logged string.
        blocked_paths: Paths whose operations are never logged. ``~`` is
            matched both literally and expanded.
        bash_tracer: Runner for ``trace_bash_command``; one with default
            policy is created when omitted.
    """

    def __init__(
        self,
        pipeline: EventPipeline,
        session_id: str,
        *,
        capture_file_operations: bool = True,
        sanitize_output: bool = True,
        max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE,
        blocked_paths: Sequence[str] = DEFAULT_BLOCKED_PATHS,
        bash_tracer: BashTracer | None = None,
    ):
        self._pipeline = pipeline
        self._session_id = session_id
        self._clock = pipeline.clock
        self._capture_file_operations = capture_file_operations
        self._sanitize_output = sanitize_output
        self._max_output_size = max_output_size
        self._blocked_paths = tuple(blocked_paths)
        self._bash_tracer = bash_tracer or BashTracer(
            pipeline,
            session_id,
            max_output_size=max_output_size,
            sanitize_output=sanitize_output,
        )
        self._metrics = ToolExecutionMetrics()
        self._start_time = self._clock()

    # -------------------------------------------------------------------------
    # Tool calls
    # -------------------------------------------------------------------------

    async def trace_tool_execution(
        self,
        tool_name: str,
        operation: Callable[[], Any],
        parameters: Any = None,
    ) -> OperationResult[Any]:
        """Run ``operation`` and log a ``tool_execution`` event.

        ``operation`` takes no arguments and may return an awaitable. The
        result carries the operation's return value, or the exception it
        raised.
        """
        start = self._clock()
        try:
            value = operation()
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            end = self._clock()
            self._metrics.errors += 1
            logger.debug(f"Tool '{tool_name}' failed: {e}")
            await self._log(
                {
                    "type": EventType.TOOL_EXECUTION.value,
                    "timestamp": start,
                    "session_id": self._session_id,
                    "tool_name": tool_name,
                    "parameters": self._clean(parameters),
                    "timing": _timing(start, end),
                    "success": False,
                    "error": str(e) or type(e).__name__,
                }
            )
            return OperationResult.fail(e)

        end = self._clock()
        self._metrics.total_tool_calls += 1
        self._record_execution_time(end - start)
        await self._log(
            {
                "type": EventType.TOOL_EXECUTION.value,
                "timestamp": start,
                "session_id": self._session_id,
                "tool_name": tool_name,
                "parameters": self._clean(parameters),
                "result": self._clean(value),
                "timing": _timing(start, end),
                "success": True,
            }
        )
        return OperationResult.ok(value)

    # -------------------------------------------------------------------------
    # File operations
    # -------------------------------------------------------------------------

    async def trace_file_operation(
        self,
        operation: str,
        file_path: str,
        content: Any = None,
        previous_content: Any = None,
    ) -> OperationResult[None]:
        """Log a ``file_operation`` event for an operation the agent performed.

        Blocked paths are skipped without an event. The result fails when
        the pipeline rejects the event, e.g. for an unknown ``operation``.
        """
        if not self._capture_file_operations:
            return OperationResult.ok()
        if self.is_path_blocked(file_path):
            logger.warning(f"File operation on blocked path not traced: {operation}")
            return OperationResult.ok()

        start = self._clock()
        event: dict[str, Any] = {
            "type": EventType.FILE_OPERATION.value,
            "timestamp": start,
            "session_id": self._session_id,
            "operation": operation,
            "file_path": file_path,
            "success": True,
        }
        if content is not None:
            text = _as_text(content)
            event["content_preview"] = self._clean(text[:CONTENT_PREVIEW_CHARS])
            event["size"] = len(text)
            self._metrics.total_data_processed += len(text)
        if operation == "edit" and content is not None and previous_content is not None:
            event["diff"] = line_diff(_as_text(previous_content), _as_text(content))
        event["timing"] = _timing(start, self._clock())

        result = await self._log(event)
        if result.success:
            self._metrics.file_operations += 1
        else:
            self._metrics.errors += 1
        return result

    def is_path_blocked(self, file_path: str) -> bool:
        candidates = {file_path, os.path.expanduser(file_path)}
        for blocked in self._blocked_paths:
            forms = {blocked, os.path.expanduser(blocked)}
            if any(form in candidate for form in forms for candidate in candidates):
                return True
        return False

    # -------------------------------------------------------------------------
    # Shell commands
    # -------------------------------------------------------------------------

    async def trace_bash_command(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> OperationResult[CommandResult]:
        """Run a shell command through the bash tracer and count it."""
        result = await self._bash_tracer.trace_command(command, cwd=cwd, env=env, timeout_seconds=timeout_seconds)
        if not result.success:
            self._metrics.errors += 1
            return result
        self._metrics.bash_commands += 1
        self._metrics.total_data_processed += len(result.data.stdout) + len(result.data.stderr)
        if self._sanitize_output:
            self._metrics.sanitized_operations += 1
        return result

    # -------------------------------------------------------------------------
    # Metrics and shutdown
    # -------------------------------------------------------------------------

    def get_metrics(self) -> ToolExecutionMetrics:
        return self._metrics.model_copy()

    async def shutdown(self) -> OperationResult[None]:
        """Log the final metrics as a ``tool_result`` event."""
        output = self._metrics.model_dump()
        now = self._clock()
        return await self._log(
            {
                "type": EventType.TOOL_RESULT.value,
                "timestamp": now,
                "session_id": self._session_id,
                "tool_name": type(self).__name__,
                "output_data": output,
                "size_bytes": len(json.dumps(output)),
                "processing_time": max(0, now - self._start_time),
                "success": True,
            }
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _clean(self, value: Any) -> Any:
        if value is None or not self._sanitize_output:
            return value
        return sanitize_value(value, self._max_output_size)

    def _record_execution_time(self, duration: float) -> None:
        calls = self._metrics.total_tool_calls
        total = self._metrics.average_execution_time * (calls - 1) + duration
        self._metrics.average_execution_time = total / calls

    async def _log(self, event: dict[str, Any]) -> OperationResult[None]:
        result = await self._pipeline.log_event(event)
        if not result.success:
            logger.warning(f"{event['type']} event not logged: {result.error}")
        return result


def line_diff(before: str, after: str) -> dict[str, Any]:
    """Added and removed line counts between two texts."""
    additions = deletions = 0
    for line in difflib.ndiff(before.splitlines(), after.splitlines()):
        if line.startswith("+ "):
            additions += 1
        elif line.startswith("- "):
            deletions += 1
    return {"additions": additions, "deletions": deletions, "preview": f"+{additions} -{deletions} lines"}


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value, default=str)


def _timing(start: float, end: float) -> dict[str, float]:
    return {"start": start, "end": end, "duration": max(0, end - start)}
