from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool


def create_engine(database_url: str) -> AsyncEngine:
    if is_sqlite(database_url):
        # Each aiosqlite connection owns a thread; do not keep them across event loops.
        return create_async_engine(database_url, poolclass=NullPool)
    return create_async_engine(database_url, pool_pre_ping=True)


def is_postgres(database_url: str) -> bool:
    return database_url.startswith("postgresql")


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")
