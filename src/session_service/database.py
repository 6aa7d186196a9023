"""Async engine and session plumbing for the session store."""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base shared by the session tables."""


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.echo_sql}
    if settings.database_url.startswith("sqlite"):
        # Snapshot pollers read while pushes write the same file.
        options["connect_args"] = {"timeout": settings.sqlite_busy_timeout}
    return options


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(settings.database_url, **_engine_options(settings))


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


engine = create_engine()
SessionFactory = create_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session per request; uncommitted work is rolled back on errors."""

    async with SessionFactory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


__all__ = [
    "Base",
    "SessionFactory",
    "create_engine",
    "create_session_factory",
    "engine",
    "get_session",
]
