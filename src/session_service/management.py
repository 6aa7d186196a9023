"""Administrative commands for the session database."""
from __future__ import annotations

import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings, get_settings
from .database import Base, create_engine, engine

logger = logging.getLogger(__name__)


async def init_database(db_engine: AsyncEngine | None = None, *, drop: bool = False) -> None:
    """Create the ``sessions`` table, optionally dropping it first."""

    from . import models  # noqa: F401  registers SessionRecord on Base.metadata

    async with (db_engine or engine).begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _init_with(settings: Settings, drop: bool) -> None:
    db_engine = create_engine(settings)
    try:
        await init_database(db_engine, drop=drop)
    finally:
        await db_engine.dispose()


def cli_init_database(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Create the session service tables.")
    parser.add_argument("--database-url", help="Override SESSION_SERVICE_DATABASE_URL.")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first.")
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.database_url:
        settings = Settings(database_url=args.database_url)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_init_with(settings, args.drop))
    logger.info("Initialized session tables at %s", settings.database_url)


if __name__ == "__main__":
    cli_init_database()
