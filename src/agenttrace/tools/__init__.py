# src/agenttrace/tools/__init__.py
"""Tracing of the agent's tool calls, file operations and shell commands."""

from .bash_tracer import BashTracer, CommandResult
from .execution_tracer import ToolExecutionMetrics, ToolExecutionTracer
from .sanitizer import sanitize_output, sanitize_value

__all__ = [
    "BashTracer",
    "CommandResult",
    "ToolExecutionMetrics",
    "ToolExecutionTracer",
    "sanitize_output",
    "sanitize_value",
]
