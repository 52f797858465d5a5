# src/agenttrace/sessions/__init__.py
"""
Session lifecycle management for agenttrace.
"""

from .manager import SESSION_IDLE_TIMEOUT_MS, SessionRegistry

__all__ = [
    "SESSION_IDLE_TIMEOUT_MS",
    "SessionRegistry",
]
