# tests/conftest.py
"""
Shared fixtures for the agenttrace test suite.

Every fixture that touches the filesystem works under pytest's ``tmp_path``;
nothing is written to the real ``.agent-trace`` directory.
"""

import json
from pathlib import Path

import pytest

from agenttrace.config import TracerConfig
from agenttrace.models import now_ms


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int | None = None):
        self.now = start if start is not None else now_ms()

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def trace_dir(tmp_path: Path) -> Path:
    return tmp_path / "trace"


@pytest.fixture
def config(trace_dir: Path) -> TracerConfig:
    """Config writing under tmp_path with a long timer so only explicit flushes run."""
    return TracerConfig(output_dir=str(trace_dir), flush_interval_ms=60_000)


def read_jsonl(path: Path) -> list[dict]:
    """Parse every non-blank line of a JSONL file."""
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def session_files(trace_dir: Path) -> list[Path]:
    sessions_dir = trace_dir / "sessions"
    if not sessions_dir.exists():
        return []
    return sorted(sessions_dir.glob("*.jsonl"))


@pytest.fixture(name="read_jsonl")
def read_jsonl_fixture():
    return read_jsonl


@pytest.fixture(name="session_files")
def session_files_fixture():
    return session_files
