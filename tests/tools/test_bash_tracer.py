# tests/tools/test_bash_tracer.py
"""Tests for BashTracer: command screening, execution and bash_command events."""

from pathlib import Path

import pytest
import pytest_asyncio

from agenttrace.exceptions import CommandRejectedError
from agenttrace.tools.bash_tracer import BashTracer
from agenttrace.tracing.pipeline import EventPipeline


@pytest_asyncio.fixture
async def pipeline(config, clock):
    pipeline = EventPipeline(config, clock=clock)
    yield pipeline
    await pipeline.shutdown()


@pytest_asyncio.fixture
async def session_id(pipeline):
    return (await pipeline.start_session("run the build")).data


async def _events(pipeline, session_id, read_jsonl, event_type="bash_command"):
    await pipeline.flush()
    path = Path(pipeline.registry.get_session(session_id).data.file_path)
    return [event for event in read_jsonl(path) if event["type"] == event_type]


class TestValidateCommand:
    @pytest.fixture
    def tracer(self, pipeline):
        return BashTracer(pipeline, "unused")

    @pytest.mark.parametrize("command", ["ls -la", "cat notes.txt", "git status && git diff | head -5"])
    def test_allowed(self, tracer, command):
        assert tracer.validate_command(command).success

    @pytest.mark.parametrize(
        "command, reason",
        [
            ("sudo ls", "Blocked program 'sudo'"),
            ("ls; shutdown now", "Blocked program 'shutdown'"),
            ("/usr/bin/sudo ls", "Blocked program 'sudo'"),
            ("vim notes.txt", "'vim' is not allowed"),
            ("rm -rf /", "dangerous pattern"),
            ("ls && rm -rf build", "dangerous pattern"),
            ("   ", "Empty command"),
        ],
    )
    def test_rejected(self, tracer, command, reason):
        result = tracer.validate_command(command)
        assert not result.success
        assert isinstance(result.error, CommandRejectedError)
        assert reason in str(result.error)

    def test_empty_allow_list_allows_unblocked_programs(self, pipeline):
        tracer = BashTracer(pipeline, "unused", allowed_commands=())
        assert tracer.validate_command("vim notes.txt").success
        assert not tracer.validate_command("sudo vim").success


class TestTraceCommand:
    @pytest.mark.asyncio
    async def test_output_captured_and_logged(self, pipeline, session_id, tmp_path, read_jsonl):
        tracer = BashTracer(pipeline, session_id)
        result = await tracer.trace_command("echo hello", cwd=str(tmp_path))

        assert result.success
        assert result.data.stdout == "hello\n"
        assert result.data.exit_code == 0
        [event] = await _events(pipeline, session_id, read_jsonl)
        assert event["command"] == "echo hello"
        assert event["working_directory"] == str(tmp_path)
        assert event["stdout"] == "hello\n"
        assert event["success"] is True
        assert event["sanitized_output"] is True
        assert event["timing"]["duration"] >= 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_logged_as_unsuccessful(self, pipeline, session_id, tmp_path, read_jsonl):
        tracer = BashTracer(pipeline, session_id)
        result = await tracer.trace_command("ls ./does-not-exist", cwd=str(tmp_path))

        assert result.success
        assert result.data.exit_code != 0
        assert result.data.stderr
        [event] = await _events(pipeline, session_id, read_jsonl)
        assert event["success"] is False
        assert event["exit_code"] == result.data.exit_code

    @pytest.mark.asyncio
    async def test_secrets_in_output_masked(self, pipeline, session_id, read_jsonl):
        tracer = BashTracer(pipeline, session_id)
        result = await tracer.trace_command("echo password=hunter2")

        assert result.data.stdout == "password=hunter2\n"
        [event] = await _events(pipeline, session_id, read_jsonl)
        assert "hunter2" not in event["stdout"]
        assert "[REDACTED]" in event["stdout"]

    @pytest.mark.asyncio
    async def test_environment_passed_to_command(self, pipeline, session_id):
        tracer = BashTracer(pipeline, session_id)
        result = await tracer.trace_command("echo $BUILD_LABEL", env={"BUILD_LABEL": "nightly"})
        assert result.data.stdout == "nightly\n"

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, pipeline, session_id, read_jsonl):
        tracer = BashTracer(pipeline, session_id, allowed_commands=("sleep",))
        result = await tracer.trace_command("sleep 5", timeout_seconds=0.2)

        assert result.success
        assert result.data.timed_out
        assert result.data.exit_code == -1
        [event] = await _events(pipeline, session_id, read_jsonl)
        assert event["timed_out"] is True
        assert event["success"] is False

    @pytest.mark.asyncio
    async def test_rejected_command_never_runs(self, pipeline, session_id, tmp_path, read_jsonl):
        marker = tmp_path / "created"
        tracer = BashTracer(pipeline, session_id)
        result = await tracer.trace_command(f"touch {marker}; sudo ls")

        assert not result.success
        assert isinstance(result.error, CommandRejectedError)
        assert not marker.exists()
        assert await _events(pipeline, session_id, read_jsonl) == []

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, pipeline, session_id, tmp_path, read_jsonl):
        tracer = BashTracer(pipeline, session_id)
        missing = str(tmp_path / "gone")
        result = await tracer.trace_command("ls", cwd=missing)

        assert not result.success
        assert isinstance(result.error, OSError)
        [event] = await _events(pipeline, session_id, read_jsonl)
        assert event["exit_code"] == -1
        assert event["working_directory"] == missing
