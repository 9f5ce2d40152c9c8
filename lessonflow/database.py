"""Database configuration and session management."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from lessonflow.config.settings import settings

# Import models so they are attached to Base.metadata before table creation
from lessonflow.models import Base  # noqa: F401 - ensures metadata is registered
from lessonflow.models import analysis, lesson, transcript  # noqa: F401

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_engine_for(url: str, *, echo: bool = False, serverless: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-appropriate pooling."""

    engine_options: dict[str, Any] = {
        "echo": echo,
        "future": True,
    }

    if _is_sqlite(url):
        # aiosqlite connections cannot be pre-pinged across threads.
        engine_options["poolclass"] = NullPool
    else:
        engine_options["pool_pre_ping"] = True
        if serverless:
            # Disable pooling when working with serverless databases.
            engine_options["poolclass"] = NullPool

    return create_async_engine(url, **engine_options)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine: AsyncEngine = create_engine_for(
    settings.database.url,
    echo=settings.debug,
    serverless=settings.database.serverless or settings.debug,
)

SessionFactory = create_session_factory(engine)


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create database tables if they do not exist."""

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Ensured database tables (%s).", target.url.get_backend_name())


async def dispose_engine() -> None:
    """Dispose of the engine and release pooled connections."""

    await engine.dispose()
