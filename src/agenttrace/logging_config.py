# src/agenttrace/logging_config.py
"""
Diagnostic logging setup for applications embedding agenttrace.

The library itself only creates module loggers
(``logging.getLogger(__name__)``) and never installs handlers on import.
A host process that wants agenttrace's own diagnostics on disk or on the
console calls :func:`configure_logging` once at startup.

These diagnostics are separate from the JSONL trace files: they describe
what the tracer did (flushes, dropped events, write failures), never the
traced payloads themselves.

Key concepts:

    **Display filter**: With ``console_enabled=False`` (the default) the
    console handler is still installed, but only records carrying
    ``extra={"display": True}`` pass it. Use :func:`log_display` for
    messages a user should see even in quiet mode, such as where a
    session's trace file was written.

    **File modes**: ``file_mode="per_run"`` writes a fresh timestamped file
    per process; ``file_mode="single"`` appends to one file rotated by
    size with ``RotatingFileHandler``.

Usage:
    from agenttrace.logging_config import configure_logging, log_display

    configure_logging(app_name="agenttrace", config={"file_directory": "/tmp/logs"})

    import logging
    logger = logging.getLogger("agenttrace.cli")
    log_display(logger, logging.INFO, "Trace written to %s", path)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Default logging configuration
# ---------------------------------------------------------------------------

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": True,
    "file_level": "DEBUG",
    "file_directory": "~/.agent-trace/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-36s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "agenttrace": "INFO",
        "agenttrace.tracing.pipeline": "INFO",
        "agenttrace.tracing.streaming": "INFO",
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "asyncio": "WARNING",
    },
}


def _resolve_level(level: str | int | None, default: int) -> int:
    """Turn a level name or number into a logging level, falling back to ``default``."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    return default


# ---------------------------------------------------------------------------
# DisplayFilter
# ---------------------------------------------------------------------------


class DisplayFilter(logging.Filter):
    """Gate for the console handler.

    When the console is globally enabled every record passes and the
    handler level decides. Otherwise only records flagged
    ``display=True`` at or above ``display_min_level`` pass.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


# ---------------------------------------------------------------------------
# UnifiedLoggingManager
# ---------------------------------------------------------------------------


class UnifiedLoggingManager:
    """
    Process-wide owner of the root logger's handlers.

    Configuration happens at most once unless ``force_reconfigure`` is
    passed; handler levels can be adjusted afterwards at runtime.
    """

    _instance: Optional["UnifiedLoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None
    _display_filter: DisplayFilter | None = None

    def __new__(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "UnifiedLoggingManager":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    @classmethod
    def get_log_file_path(cls) -> Path | None:
        return cls._log_file_path

    def configure(
        self,
        app_name: str = "agenttrace",
        config: dict[str, Any] | None = None,
        force_reconfigure: bool = False,
    ) -> Path | None:
        """
        Install console and file handlers on the root logger.

        Args:
            app_name: Used in the log file name.
            config: Overrides merged over ``DEFAULT_LOGGING_CONFIG``.
            force_reconfigure: Replace handlers even if already configured.

        Returns:
            Path of the log file, or None when file logging is off or failed.
        """
        if UnifiedLoggingManager._configured and not force_reconfigure:
            return UnifiedLoggingManager._log_file_path

        log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()
        root_logger.setLevel(logging.DEBUG)

        console_enabled = bool(log_config.get("console_enabled", False))
        self._display_filter = DisplayFilter(
            console_globally_enabled=console_enabled,
            display_min_level=_resolve_level(log_config.get("display_min_level"), logging.INFO),
        )
        self._console_handler = self._create_console_handler(log_config)
        if not console_enabled:
            # The filter is the only gate for display=True records.
            self._console_handler.setLevel(logging.DEBUG)
        self._console_handler.addFilter(self._display_filter)
        root_logger.addHandler(self._console_handler)

        self._file_handler = None
        UnifiedLoggingManager._log_file_path = None
        if log_config.get("file_enabled", True):
            self._file_handler, path = self._create_file_handler(log_config, app_name)
            if self._file_handler is not None:
                root_logger.addHandler(self._file_handler)
                UnifiedLoggingManager._log_file_path = path

        for component_name, level in log_config.get("components", {}).items():
            logging.getLogger(component_name).setLevel(_resolve_level(level, logging.INFO))

        UnifiedLoggingManager._configured = True
        if UnifiedLoggingManager._log_file_path:
            logging.getLogger(__name__).debug(
                f"Logging configured. Log file: {UnifiedLoggingManager._log_file_path}"
            )
        return UnifiedLoggingManager._log_file_path

    def _create_console_handler(self, config: dict[str, Any]) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(_resolve_level(config.get("console_level"), logging.WARNING))
        handler.setFormatter(
            logging.Formatter(config.get("console_format", DEFAULT_LOGGING_CONFIG["console_format"]))
        )
        return handler

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        """Build the file handler for ``per_run`` or rotating ``single`` mode.

        Failures to create the directory or file are reported on stderr and
        disable file logging rather than aborting the host process.
        """
        log_dir = Path(os.path.expanduser(config.get("file_directory", DEFAULT_LOGGING_CONFIG["file_directory"])))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        try:
            if config.get("file_mode", "per_run") == "single":
                try:
                    filename = config.get("file_single_name", "{app}.log").format(app=app_name)
                except (KeyError, ValueError):
                    filename = f"{app_name}.log"
                log_file_path = log_dir / filename
                handler: logging.Handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                    backupCount=config.get("rotation_backup_count", 5),
                    encoding="utf-8",
                )
            else:
                timestamp = datetime.now()
                pattern = config.get("file_name_pattern", DEFAULT_LOGGING_CONFIG["file_name_pattern"])
                try:
                    filename = pattern.format(app=app_name, timestamp=timestamp)
                except (KeyError, ValueError):
                    filename = f"{app_name}_{timestamp.strftime('%Y%m%d_%H%M%S')}.log"
                log_file_path = log_dir / filename
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_resolve_level(config.get("file_level"), logging.DEBUG))
        handler.setFormatter(
            logging.Formatter(config.get("file_format", DEFAULT_LOGGING_CONFIG["file_format"]))
        )
        return handler, log_file_path

    def set_console_level(self, level: str | int) -> None:
        if self._console_handler is not None:
            self._console_handler.setLevel(_resolve_level(level, self._console_handler.level))

    def set_file_level(self, level: str | int) -> None:
        if self._file_handler is not None:
            self._file_handler.setLevel(_resolve_level(level, self._file_handler.level))

    def set_component_level(self, component: str, level: str | int) -> None:
        component_logger = logging.getLogger(component)
        component_logger.setLevel(_resolve_level(level, component_logger.level))

    def disable_console(self) -> None:
        """Remove the console handler; even ``display=True`` records stop showing."""
        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)
            self._console_handler = None
            self._display_filter = None

    def enable_console(self, level: str = "WARNING") -> None:
        """Install a console handler that passes every record at or above ``level``."""
        if self._display_filter is not None and self._display_filter.console_globally_enabled:
            return
        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)

        self._console_handler = self._create_console_handler({"console_level": level})
        self._display_filter = DisplayFilter(
            console_globally_enabled=True,
            display_min_level=logging.DEBUG,
        )
        self._console_handler.addFilter(self._display_filter)
        logging.getLogger().addHandler(self._console_handler)


# ---------------------------------------------------------------------------
# Public module-level functions
# ---------------------------------------------------------------------------


def configure_logging(
    app_name: str = "agenttrace",
    config: dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """
    Configure diagnostic logging for the host process.

    Example:
        configure_logging(
            app_name="agenttrace",
            config={"console_enabled": True, "file_enabled": False},
        )
    """
    return UnifiedLoggingManager.get_instance().configure(
        app_name=app_name,
        config=config,
        force_reconfigure=force_reconfigure,
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log ``msg`` so that it also reaches the console in quiet mode.

    The caller's own ``extra`` mapping is preserved; ``display_min_level``
    still applies.
    """
    extra = dict(kwargs.pop("extra", None) or {})
    extra["display"] = True
    logger.log(level, msg, *args, extra=extra, **kwargs)


def get_log_file_path() -> Path | None:
    return UnifiedLoggingManager.get_log_file_path()


def set_console_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_console_level(level)


def set_file_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_file_level(level)


def set_component_level(component: str, level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_component_level(component, level)


def disable_console_logging() -> None:
    UnifiedLoggingManager.get_instance().disable_console()


def enable_console_logging(level: str = "WARNING") -> None:
    UnifiedLoggingManager.get_instance().enable_console(level)
