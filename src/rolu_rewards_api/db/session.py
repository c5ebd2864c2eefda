from __future__ import annotations

from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rolu_rewards_api.db.engine import create_engine
from rolu_rewards_api.settings import Settings, get_settings


@lru_cache(maxsize=4)
def create_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    """One engine and session factory per database URL, shared by the API and the batch script."""
    return async_sessionmaker(create_engine(database_url), expire_on_commit=False)


async def get_db_session(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncIterator[AsyncSession]:
    async with create_sessionmaker(settings.database_url)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


DbSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
