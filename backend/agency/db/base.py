"""Declarative base and the process wide async engine/session factory."""
from __future__ import annotations

from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Base class for the agency ORM models."""

    metadata = metadata


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create the shared engine and bind a session factory to it.

    Calling this twice returns the engine created first; call
    :func:`dispose_engine` before switching databases.
    """

    global _engine, _session_factory

    if _engine is None:
        _engine = create_async_engine(database_url, **kwargs)
    if _session_factory is None:
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine has not been initialised")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database session factory has not been initialised")
    return _session_factory


def create_session(**kwargs: Any) -> AsyncSession:
    """Instantiate a new :class:`AsyncSession` from the shared factory."""

    return get_session_factory()(**kwargs)


async def create_all() -> None:
    """Create every table known to :data:`metadata` on the shared engine."""

    async with get_engine().begin() as connection:
        await connection.run_sync(metadata.create_all)


async def dispose_engine() -> None:
    """Dispose of the cached engine and forget the session factory."""

    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "AsyncEngine",
    "AsyncSession",
    "Base",
    "create_all",
    "create_engine",
    "create_session",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "metadata",
]
