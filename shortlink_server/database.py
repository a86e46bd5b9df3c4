# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database connection and session management."""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shortlink_server.models.base import Base


class Database:
    """Engine plus session factory, built once per application from settings."""

    def __init__(self, url: str, **engine_kwargs):
        if url.startswith("postgresql"):
            engine_kwargs.setdefault("pool_size", 10)
            engine_kwargs.setdefault("max_overflow", 20)
        self.engine: AsyncEngine = create_async_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            **engine_kwargs,
        )
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    async def init_models(self) -> None:
        """Create all tables. Call at startup."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI that yields a database session.

    The whole request is one unit of work: committed on success, rolled back
    if anything raised.
    """
    database: Database = request.app.state.database
    async with database.session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
