# src/agenttrace/exceptions.py
"""
Custom exceptions for the agenttrace library.

This module defines a hierarchy of exception classes so that callers can
tell validation, serialization, storage and session-state failures apart.
Public operations usually hand these back inside an ``OperationResult``
instead of raising them.
"""

class AgentTraceError(Exception):
    """Base class for all agenttrace specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in agenttrace."):
        super().__init__(message)

class ConfigError(AgentTraceError):
    """Raised when a tracer configuration fails validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class EventValidationError(AgentTraceError):
    """Raised when an event is malformed or outside policy. Carries every problem found."""
    def __init__(self, errors: list[str] | None = None, message: str = "Event validation failed."):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message} {'; '.join(self.errors)}"
        super().__init__(message)

class SerializationError(AgentTraceError):
    """Raised when an event cannot be encoded to, or decoded from, a JSON line."""
    def __init__(self, message: str = "Serialization error."):
        super().__init__(message)

class SizeExceededError(SerializationError):
    """Raised when an event is still larger than the configured limit after truncation."""
    def __init__(self, size: int = 0, limit: int = 0, message: str = "Serialized event exceeds maximum size."):
        self.size = size
        self.limit = limit
        super().__init__(f"{message} Size: {size} bytes, limit: {limit} bytes")

class StorageError(AgentTraceError):
    """Base class for errors related to the on-disk session logs."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class SessionFileNotFoundError(StorageError):
    """Raised when no log file exists for a session."""
    def __init__(self, session_id: str, message: str = "Session file not found."):
        self.session_id = session_id
        super().__init__(f"{message} Session ID: '{session_id}'")

class SessionError(AgentTraceError):
    """Base class for session registry errors."""
    def __init__(self, message: str = "Session error."):
        super().__init__(message)

class SessionNotFoundError(SessionError):
    """Raised when a session ID is unknown to the registry, or has expired."""
    def __init__(self, session_id: str, message: str = "Session not found."):
        self.session_id = session_id
        super().__init__(f"{message} Session ID: '{session_id}'")

class SessionNotActiveError(SessionError):
    """Raised when an operation targets a session that is no longer active."""
    def __init__(self, session_id: str, status: str = "unknown", message: str = "Session is not active."):
        self.session_id = session_id
        self.status = status
        super().__init__(f"{message} Session ID: '{session_id}', status: {status}")

class PipelineShutdownError(AgentTraceError):
    """Raised when an event is logged after the pipeline started shutting down."""
    def __init__(self, message: str = "Event pipeline is shutting down."):
        super().__init__(message)

class StreamingError(AgentTraceError):
    """Raised for failures while reconstructing a streamed provider response."""
    def __init__(self, stream_id: str = "unknown", message: str = "Streaming error."):
        self.stream_id = stream_id
        super().__init__(f"Stream '{stream_id}': {message}")

class CommandRejectedError(AgentTraceError):
    """Raised when a shell command is refused before it runs."""
    def __init__(self, command: str, reason: str = "Command rejected."):
        self.command = command
        self.reason = reason
        super().__init__(f"{reason} Command: '{command}'")
