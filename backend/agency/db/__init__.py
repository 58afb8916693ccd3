"""Database helpers for the agency backend."""
from __future__ import annotations

from . import models as _models
from .base import (
    AsyncEngine,
    AsyncSession,
    Base,
    create_all,
    create_engine,
    create_session,
    dispose_engine,
    get_engine,
    get_session_factory,
    metadata,
)
from .models import *  # noqa: F401,F403
from .session import get_session

__all__ = [
    "AsyncEngine",
    "AsyncSession",
    "Base",
    "create_all",
    "create_engine",
    "create_session",
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "metadata",
] + _models.__all__
