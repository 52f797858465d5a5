# src/agenttrace/storage/__init__.py
"""
Durable storage for agenttrace: one append-only JSONL file per session.
"""

from .log_store import CleanupReport, SessionLogStore

__all__ = [
    "CleanupReport",
    "SessionLogStore",
]
