"""Database utilities for the grading core."""

from .base import Base
from .session import (
    configure_engine,
    dispose_engine,
    get_engine,
    get_session_factory,
    session_scope,
)

__all__ = [
    "Base",
    "configure_engine",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
