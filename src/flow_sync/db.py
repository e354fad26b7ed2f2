from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from flow_sync.config import settings
from flow_sync.db_urls import ensure_sqlite_parent_dir, normalize_database_url_for_async

_created_engines: list[AsyncEngine] = []


def _create_async_engine(database_url: str) -> AsyncEngine:
    url = normalize_database_url_for_async(database_url)
    engine = create_async_engine(url, echo=False, pool_pre_ping=True)
    _created_engines.append(engine)
    return engine


@lru_cache(maxsize=8)
def get_engine(database_url: str | None = None) -> AsyncEngine:
    # None means "whatever settings.database_url is right now"; call
    # reset_engine_cache() after changing it.
    return _create_async_engine(database_url or settings.database_url)


def reset_engine_cache() -> None:
    get_engine.cache_clear()


async def dispose_engines() -> None:
    while _created_engines:
        await _created_engines.pop().dispose()
    get_engine.cache_clear()


def dispose_engine_cache() -> None:
    # Sync variant for interpreter shutdown hooks where no loop is running.
    while _created_engines:
        _created_engines.pop().sync_engine.dispose()
    get_engine.cache_clear()


async def init_db(database_url: str | None = None) -> None:
    ensure_sqlite_parent_dir(database_url or settings.database_url)
    engine = get_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def session_scope(database_url: str | None = None) -> AsyncIterator[AsyncSession]:
    session_maker = async_sessionmaker(
        get_engine(database_url), class_=AsyncSession, expire_on_commit=False
    )
    async with session_maker() as session:
        yield session
