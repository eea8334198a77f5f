from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from toolweave.config import Config, get_config
from toolweave.log import logger


@cache
def _get_engine(db_url: str) -> AsyncEngine:
    logger.debug(f"Creating database engine for {db_url.split('@')[-1]}")
    return create_async_engine(db_url)


@cache
def _get_session_maker(db_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(_get_engine(db_url), expire_on_commit=False)


@asynccontextmanager
async def init_engine(config: Config) -> AsyncIterator[AsyncEngine]:
    db_url = config.get_db_url()
    engine = _get_engine(db_url)
    try:
        yield engine
    finally:
        await engine.dispose()
        _get_engine.cache_clear()
        _get_session_maker.cache_clear()


@asynccontextmanager
async def open_db_session(config: Config) -> AsyncIterator[AsyncSession]:
    """A session outside the request scope, for work that outlives the request."""
    async with _get_session_maker(config.get_db_url())() as session:
        yield session


async def get_db_session(config: Config = Depends(get_config)) -> AsyncIterator[AsyncSession]:
    async with open_db_session(config) as session:
        yield session
