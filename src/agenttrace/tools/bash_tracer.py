# src/agenttrace/tools/bash_tracer.py
"""
Shell command execution with ``bash_command`` tracing.

Commands are screened before they run: every segment of a compound command
(split on ``&&``, ``||``, ``;`` and ``|``) must start with an allowed
program, no segment may start with a blocked one, and a few destructive
shapes (``rm -rf`` after a separator, raw disk writes, fork bombs) are
refused outright. A refused command is never executed and never logged as
an event.

Accepted commands run through ``asyncio.create_subprocess_shell`` with a
timeout. Their output is scrubbed and bounded before it is logged.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..exceptions import CommandRejectedError
from ..models import EventType, OperationResult, now_ms
from .sanitizer import DEFAULT_MAX_OUTPUT_SIZE, sanitize_output, truncate_output

if TYPE_CHECKING:
    from ..tracing.pipeline import EventPipeline

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

DEFAULT_ALLOWED_COMMANDS = (
    "npm", "node", "git", "ls", "cat", "echo", "mkdir", "touch", "mv", "cp", "rm",
    "grep", "find", "wc", "sort", "uniq", "head", "tail", "curl", "wget", "ping",
    "ps", "kill", "chmod", "chown", "du", "df", "which", "whereis", "pwd", "cd",
    "tar", "gzip", "gunzip", "zip", "unzip", "python", "python3", "pip", "pytest",
)

DEFAULT_BLOCKED_COMMANDS = (
    "dd", "mkfs", "fdisk", "sudo", "su", "passwd", "useradd", "userdel", "usermod",
    "groupadd", "groupdel", "crontab", "at", "reboot", "shutdown", "halt",
    "poweroff", "mount", "umount", "systemctl", "service",
)

DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"(?:&&|;|\|)\s*rm\s+-rf", re.IGNORECASE),
    re.compile(r">\s*/dev/sd[a-z]", re.IGNORECASE),
    re.compile(r"mkfs\.", re.IGNORECASE),
    re.compile(r"dd\s+if=", re.IGNORECASE),
    re.compile(r":\(\)\s*\{.*:\|:&\s*\}"),  # fork bomb
]

_SEGMENT_SEPARATORS = re.compile(r"&&|\|\||;|\|")


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _segment_programs(command: str) -> list[str]:
    programs = []
    for segment in _SEGMENT_SEPARATORS.split(command):
        words = segment.strip().split()
        if words:
            programs.append(os.path.basename(words[0]).lower())
    return programs


class BashTracer:
    """
    Runs shell commands for one session and logs each as a ``bash_command`` event.

    Args:
        pipeline: Destination of the events.
        session_id: Session the events are logged against.
        timeout_seconds: Default time limit per command.
        max_output_size: Characters of stdout/stderr kept per event.
        allowed_commands: Programs a command segment may start with; empty
            allows any program not blocked.
        blocked_commands: Programs that are always refused.
        sanitize_output: Scrub credential shapes from the logged output.
    """

    def __init__(
        self,
        pipeline: EventPipeline,
        session_id: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE,
        allowed_commands: Sequence[str] = DEFAULT_ALLOWED_COMMANDS,
        blocked_commands: Sequence[str] = DEFAULT_BLOCKED_COMMANDS,
        sanitize_output: bool = True,
        clock: Callable[[], float] | None = None,
    ):
        self._pipeline = pipeline
        self._session_id = session_id
        self._timeout_seconds = timeout_seconds
        self._max_output_size = max_output_size
        self._allowed = {command.lower() for command in allowed_commands}
        self._blocked = {command.lower() for command in blocked_commands}
        self._sanitize_output = sanitize_output
        self._clock = clock or pipeline.clock

    def validate_command(self, command: str) -> OperationResult[None]:
        """Check a command against the allow list, block list and destructive patterns."""
        if not command or not command.strip():
            return OperationResult.fail(CommandRejectedError(command, "Empty command."))
        programs = _segment_programs(command)
        for program in programs:
            if program in self._blocked:
                return OperationResult.fail(CommandRejectedError(command, f"Blocked program '{program}'."))
            if self._allowed and program not in self._allowed:
                return OperationResult.fail(CommandRejectedError(command, f"Program '{program}' is not allowed."))
        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(command):
                return OperationResult.fail(
                    CommandRejectedError(command, "Command contains a potentially dangerous pattern.")
                )
        return OperationResult.ok()

    async def trace_command(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> OperationResult[CommandResult]:
        """Run ``command`` in a shell and log a ``bash_command`` event.

        A non-zero exit or a timeout is still a successful trace; the
        returned ``CommandResult`` carries the outcome. The result fails
        when the command is refused or the process cannot be started.
        """
        checked = self.validate_command(command)
        if not checked.success:
            logger.warning(f"Refused to run command: {checked.error}")
            return OperationResult.fail(checked.error)

        working_directory = cwd or os.getcwd()
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        start = self._clock()
        try:
            result = await self._execute(command, working_directory, env, timeout)
        except OSError as e:
            end = self._clock()
            logger.error(f"Could not start command '{command}': {e}")
            await self._log(
                {
                    "type": EventType.BASH_COMMAND.value,
                    "timestamp": start,
                    "session_id": self._session_id,
                    "command": command,
                    "working_directory": working_directory,
                    "exit_code": -1,
                    "success": False,
                    "error": str(e),
                    "timing": {"start": start, "end": end, "duration": max(0, end - start)},
                }
            )
            return OperationResult.fail(e)

        end = self._clock()
        event: dict[str, Any] = {
            "type": EventType.BASH_COMMAND.value,
            "timestamp": start,
            "session_id": self._session_id,
            "command": command,
            "working_directory": working_directory,
            "exit_code": result.exit_code,
            "success": result.succeeded,
            "timed_out": result.timed_out,
            "timing": {"start": start, "end": end, "duration": max(0, end - start)},
        }
        if self._sanitize_output:
            event["stdout"] = sanitize_output(result.stdout, self._max_output_size)
            event["stderr"] = sanitize_output(result.stderr, self._max_output_size)
            event["sanitized_output"] = True
        else:
            event["stdout"] = truncate_output(result.stdout, self._max_output_size)
            event["stderr"] = truncate_output(result.stderr, self._max_output_size)
        await self._log(event)
        return OperationResult.ok(result)

    async def _execute(
        self, command: str, cwd: str, env: Mapping[str, str] | None, timeout: float
    ) -> CommandResult:
        started = now_ms()
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env={**os.environ, **dict(env or {})},
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"Command timed out after {timeout}s: {command}")
            return CommandResult(
                stdout="",
                stderr="Command timed out",
                exit_code=-1,
                duration_ms=now_ms() - started,
                timed_out=True,
            )
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
            duration_ms=now_ms() - started,
        )

    async def _log(self, event: dict[str, Any]) -> None:
        result = await self._pipeline.log_event(event)
        if not result.success:
            logger.warning(f"bash_command event not logged: {result.error}")
