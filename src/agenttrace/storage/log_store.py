# src/agenttrace/storage/log_store.py
"""
Append-only JSONL session log files.

Layout::

    {output_dir}/
        sessions/
            {YYYY-MM-DD_HH-mm-ss}_session-{session_id}.jsonl

Each session owns exactly one file. The file is created empty when the
session starts, reserving its path; creation never overwrites an existing
file. The path is remembered until the session is finalized or dropped by
the registry, and found again by a directory scan after that. Every flush
is a single append of pre-joined lines.

Finalization re-reads the file and validates every line; a corrupt file is
reported, never deleted. The retention sweep removes ``.jsonl`` files whose
modification time is older than the window and keeps going past individual
failures.

All I/O goes through aiofiles so the event loop is never blocked on disk.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os as aios

from ..config import TracerConfig
from ..exceptions import SessionFileNotFoundError, StorageError
from ..models import OperationResult
from ..tracing.serialization import EventSerializer, JSONLValidationResult

logger = logging.getLogger(__name__)

SESSIONS_DIRNAME = "sessions"
SESSION_FILE_SUFFIX = ".jsonl"
FILENAME_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class CleanupReport:
    """Result of one retention sweep."""

    deleted: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def session_filename(session_id: str, created_at: datetime) -> str:
    return f"{created_at.strftime(FILENAME_TIMESTAMP_FORMAT)}_session-{session_id}{SESSION_FILE_SUFFIX}"


class SessionLogStore:
    """
    Owns the on-disk session files under ``config.output_dir``.

    Args:
        config: Snapshot supplying ``output_dir``.
        serializer: Used to validate files at finalization; one is created
            from ``config`` when omitted.
    """

    def __init__(self, config: TracerConfig, serializer: EventSerializer | None = None):
        self._config = config
        self._serializer = serializer or EventSerializer(config)
        self._session_files: dict[str, Path] = {}

    @property
    def config(self) -> TracerConfig:
        return self._config

    @property
    def base_dir(self) -> Path:
        return self._config.output_path

    @property
    def sessions_dir(self) -> Path:
        return self.base_dir / SESSIONS_DIRNAME

    def update_config(self, config: TracerConfig) -> None:
        """Adopt a new snapshot. Files already created keep their paths."""
        self._config = config

    async def ensure_directory_structure(self) -> OperationResult[Path]:
        """Create the base and sessions directories; safe to call repeatedly."""
        try:
            await aios.makedirs(self.sessions_dir, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create trace directories under {self.base_dir}: {e}")
            return OperationResult.fail(StorageError(f"Could not create trace directories: {e}"))
        return OperationResult.ok(self.sessions_dir)

    async def create_session_file(self, session_id: str) -> OperationResult[str]:
        """Create the empty log file for a session and remember its path."""
        existing = self._session_files.get(session_id)
        if existing is not None:
            return OperationResult.ok(str(existing))

        ensured = await self.ensure_directory_structure()
        if not ensured.success:
            return OperationResult.fail(ensured.error)

        path = self.sessions_dir / session_filename(session_id, datetime.now())
        try:
            async with aiofiles.open(path, mode="x", encoding="utf-8") as f:
                await f.write("")
        except FileExistsError:
            logger.error(f"Session file {path.name} already exists")
            return OperationResult.fail(StorageError(f"Session file for '{session_id}' already exists: {path.name}"))
        except OSError as e:
            logger.error(f"Failed to create session file for '{session_id}': {e}")
            return OperationResult.fail(StorageError(f"Failed to create session file for '{session_id}': {e}"))

        self._session_files[session_id] = path
        logger.debug(f"Created session file {path}")
        return OperationResult.ok(str(path))

    def forget_session(self, session_id: str) -> None:
        """Drop the remembered path; later lookups fall back to a directory scan."""
        self._session_files.pop(session_id, None)

    async def find_session_file(self, session_id: str) -> Path | None:
        """Path of a session's file, scanning the directory for files this process did not create."""
        known = self._session_files.get(session_id)
        if known is not None:
            return known
        suffix = f"session-{session_id}{SESSION_FILE_SUFFIX}"
        try:
            names = await aios.listdir(self.sessions_dir)
        except OSError:
            return None
        for name in sorted(names):
            if name.endswith(suffix):
                return self.sessions_dir / name
        return None

    async def append(self, session_id: str, lines: list[str]) -> OperationResult[int]:
        """Append serialized lines to a session's file in one write.

        Returns:
            The number of characters written.
        """
        if not lines:
            return OperationResult.ok(0)
        path = await self.find_session_file(session_id)
        if path is None:
            return OperationResult.fail(SessionFileNotFoundError(session_id))

        content = "\n".join(line.rstrip("\n") for line in lines) + "\n"
        try:
            async with aiofiles.open(path, mode="a", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            return OperationResult.fail(StorageError(f"Failed to append to session file for '{session_id}': {e}"))
        return OperationResult.ok(len(content))

    async def finalize(self, session_id: str) -> OperationResult[JSONLValidationResult]:
        """Re-read and validate a session's file. A corrupt file is reported and left in place."""
        path = await self.find_session_file(session_id)
        if path is None:
            return OperationResult.fail(SessionFileNotFoundError(session_id))

        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                content = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            return OperationResult.fail(StorageError(f"Failed to read session file for '{session_id}': {e}"))

        report = self._serializer.validate_jsonl(content)
        self._session_files.pop(session_id, None)
        if not report.is_valid:
            logger.warning(
                f"Session file {path.name} failed integrity check with {len(report.errors)} error(s)"
            )
            return OperationResult.fail(
                StorageError(f"Session file for '{session_id}' is corrupt: {'; '.join(report.errors[:5])}"),
                data=report,
            )
        logger.debug(f"Finalized session file {path.name} ({report.line_count} lines)")
        return OperationResult.ok(report)

    async def cleanup(self, retention_days: int) -> OperationResult[CleanupReport]:
        """Delete session files not modified within ``retention_days``."""
        report = CleanupReport()
        if not await aios.path.isdir(self.sessions_dir):
            return OperationResult.ok(report)

        cutoff = time.time() - retention_days * SECONDS_PER_DAY
        try:
            names = await aios.listdir(self.sessions_dir)
        except OSError as e:
            return OperationResult.fail(StorageError(f"Could not list session files: {e}"))

        for name in names:
            if not name.endswith(SESSION_FILE_SUFFIX):
                continue
            path = self.sessions_dir / name
            try:
                stat = await aios.stat(path)
                if stat.st_mtime < cutoff:
                    await aios.remove(path)
                    report.deleted += 1
            except OSError as e:
                report.failed += 1
                report.errors.append(f"{name}: {e}")
                logger.warning(f"Could not remove expired session file {name}: {e}")

        if report.deleted or report.failed:
            logger.info(f"Retention sweep removed {report.deleted} file(s), {report.failed} failure(s)")
        return OperationResult.ok(report)

    async def list_session_files(self) -> OperationResult[list[str]]:
        """Names of all session files, oldest first."""
        if not await aios.path.isdir(self.sessions_dir):
            return OperationResult.ok([])
        try:
            names = await aios.listdir(self.sessions_dir)
        except OSError as e:
            return OperationResult.fail(StorageError(f"Could not list session files: {e}"))
        return OperationResult.ok(
            sorted(name for name in names if name.endswith(SESSION_FILE_SUFFIX) and "session-" in name)
        )

    async def check_writable(self) -> OperationResult[bool]:
        """Check the base directory with a small write-and-delete."""
        ensured = await self.ensure_directory_structure()
        if not ensured.success:
            return OperationResult.ok(False)
        marker = self.base_dir / ".write-check"
        try:
            async with aiofiles.open(marker, mode="w", encoding="utf-8") as f:
                await f.write("ok")
            await aios.remove(marker)
        except OSError as e:
            logger.warning(f"Trace directory {self.base_dir} is not writable: {e}")
            return OperationResult.ok(False)
        return OperationResult.ok(True)
