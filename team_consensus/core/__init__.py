"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    build_engine,
    build_session_factory,
    close_db,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)
from .locks import KeyedLocks

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "build_engine",
    "build_session_factory",
    "get_engine",
    "get_session_factory",
    "get_session_context",
    "init_db",
    "close_db",
    # Concurrency
    "KeyedLocks",
]
