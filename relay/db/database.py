"""
Async database engine for the gift ledger.

The ledger is optional: until init_engine() is called with a URL (from
GIFT_LEDGER_URL), AsyncSessionLocal stays None and nothing is persisted.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from relay.db.models import Base

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def init_engine(url: str) -> async_sessionmaker[AsyncSession]:
    global engine, AsyncSessionLocal
    engine = create_async_engine(url, pool_pre_ping=True)
    AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    return AsyncSessionLocal


async def create_tables() -> None:
    if engine is None:
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
